"""
Block quantization in the ggml formats.

Every quantized type packs 32 consecutive elements of a row into one block
holding a float16 scale (and for the _1 variants a float16 minimum) plus the
packed integer codes. Rows must therefore be a multiple of 32 long.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import torch

QK = 32


class DataType(Enum):
    F32 = 0
    F16 = 1
    Q4_0 = 2
    Q4_1 = 3
    Q5_0 = 6
    Q5_1 = 7
    Q8_0 = 8

    @property
    def is_quantized(self) -> bool:
        return self not in (DataType.F32, DataType.F16)

    @property
    def block_size(self) -> int:
        return QK if self.is_quantized else 1

    @property
    def type_size(self) -> int:
        return _TYPE_SIZES[self]

    def n_bytes(self, n_elements: int) -> int:
        return n_elements // self.block_size * self.type_size

    @classmethod
    def from_name(cls, name: str) -> "DataType":
        try:
            return cls[name.upper()]
        except KeyError:
            raise ValueError(f"Unknown data type: {name}") from None


_TYPE_SIZES = {
    DataType.F32: 4,
    DataType.F16: 2,
    DataType.Q4_0: 2 + QK // 2,
    DataType.Q4_1: 2 + 2 + QK // 2,
    DataType.Q5_0: 2 + 4 + QK // 2,
    DataType.Q5_1: 2 + 2 + 4 + QK // 2,
    DataType.Q8_0: 2 + QK,
}


@dataclass
class QuantizedTensor:
    """Packed blocks of a 2-D weight, row-major, ``shape[-1]`` innermost."""

    dtype: DataType
    shape: tuple[int, ...]
    blocks: np.ndarray

    @property
    def n_elements(self) -> int:
        count = 1
        for dim in self.shape:
            count *= dim
        return count

    def dequantize(self) -> torch.Tensor:
        values = _dequantize_blocks(self.dtype, self.blocks)
        return torch.from_numpy(values.reshape(self.shape))

    def rows(self, ids: torch.Tensor) -> torch.Tensor:
        n_rows = self.n_elements // self.shape[-1]
        per_row = self.shape[-1] // QK
        selected = self.blocks.reshape(n_rows, per_row, self.dtype.type_size)[ids.cpu().numpy()]
        values = _dequantize_blocks(self.dtype, selected.reshape(-1, self.dtype.type_size))
        return torch.from_numpy(values.reshape(len(ids), self.shape[-1]))

    def to_bytes(self) -> bytes:
        return self.blocks.tobytes()

    @classmethod
    def from_bytes(cls, dtype: DataType, shape: tuple[int, ...], raw: bytes) -> "QuantizedTensor":
        blocks = np.frombuffer(raw, dtype=np.uint8).reshape(-1, dtype.type_size).copy()
        return cls(dtype=dtype, shape=tuple(shape), blocks=blocks)


def _f16_field(blocks: np.ndarray, offset: int) -> np.ndarray:
    return blocks[:, offset:offset + 2].copy().view(np.float16).astype(np.float32)


def _unpack_nibbles(qs: np.ndarray) -> np.ndarray:
    return np.concatenate([qs & 0x0F, qs >> 4], axis=1).astype(np.int32)


def _unpack_high_bits(qh: np.ndarray) -> np.ndarray:
    shifts = np.arange(QK, dtype=np.uint32)
    return (((qh >> shifts) & 1) << 4).astype(np.int32)


def _dequantize_blocks(dtype: DataType, blocks: np.ndarray) -> np.ndarray:
    d = _f16_field(blocks, 0)

    if dtype is DataType.Q8_0:
        q = blocks[:, 2:].copy().view(np.int8).astype(np.float32)
        return q * d
    if dtype is DataType.Q4_0:
        q = _unpack_nibbles(blocks[:, 2:]) - 8
        return q.astype(np.float32) * d
    if dtype is DataType.Q4_1:
        m = _f16_field(blocks, 2)
        return _unpack_nibbles(blocks[:, 4:]).astype(np.float32) * d + m
    if dtype is DataType.Q5_0:
        qh = blocks[:, 2:6].copy().view("<u4")
        q = (_unpack_nibbles(blocks[:, 6:]) | _unpack_high_bits(qh)) - 16
        return q.astype(np.float32) * d
    if dtype is DataType.Q5_1:
        m = _f16_field(blocks, 2)
        qh = blocks[:, 4:8].copy().view("<u4")
        q = _unpack_nibbles(blocks[:, 8:]) | _unpack_high_bits(qh)
        return q.astype(np.float32) * d + m
    raise ValueError(f"{dtype.name} is not a block-quantized type")


def _f16_bytes(values: np.ndarray) -> np.ndarray:
    return values.astype(np.float16).reshape(-1, 1).view(np.uint8)


def _pack_nibbles(q: np.ndarray) -> np.ndarray:
    q = q.astype(np.uint8)
    return (q[:, :QK // 2] & 0x0F) | ((q[:, QK // 2:] & 0x0F) << 4)


def _pack_high_bits(q: np.ndarray) -> np.ndarray:
    bits = ((q.astype(np.uint32) >> 4) & 1) << np.arange(QK, dtype=np.uint32)
    return bits.sum(axis=1, dtype=np.uint32).astype("<u4").reshape(-1, 1).view(np.uint8)


def _inverse(d: np.ndarray) -> np.ndarray:
    safe = np.where(d == 0, 1.0, d)
    return np.where(d == 0, 0.0, 1.0 / safe).astype(np.float32)


def _signed_absmax(x: np.ndarray) -> np.ndarray:
    idx = np.abs(x).argmax(axis=1)
    return x[np.arange(len(x)), idx]


def _quantize_blocks(dtype: DataType, x: np.ndarray) -> np.ndarray:
    if dtype is DataType.Q8_0:
        d = np.abs(x).max(axis=1) / 127
        q = np.round(x * _inverse(d)[:, None]).astype(np.int8)
        return np.concatenate([_f16_bytes(d), q.view(np.uint8)], axis=1)

    if dtype in (DataType.Q4_0, DataType.Q5_0):
        levels = 16 if dtype is DataType.Q4_0 else 32
        d = _signed_absmax(x) / -(levels // 2)
        q = np.trunc(x * _inverse(d)[:, None] + levels // 2 + 0.5)
        q = np.clip(q, 0, levels - 1).astype(np.uint8)
        if dtype is DataType.Q4_0:
            return np.concatenate([_f16_bytes(d), _pack_nibbles(q)], axis=1)
        return np.concatenate([_f16_bytes(d), _pack_high_bits(q), _pack_nibbles(q)], axis=1)

    if dtype in (DataType.Q4_1, DataType.Q5_1):
        levels = 16 if dtype is DataType.Q4_1 else 32
        lo = x.min(axis=1)
        d = (x.max(axis=1) - lo) / (levels - 1)
        q = np.trunc((x - lo[:, None]) * _inverse(d)[:, None] + 0.5)
        q = np.clip(q, 0, levels - 1).astype(np.uint8)
        header = [_f16_bytes(d), _f16_bytes(lo)]
        if dtype is DataType.Q4_1:
            return np.concatenate(header + [_pack_nibbles(q)], axis=1)
        return np.concatenate(header + [_pack_high_bits(q), _pack_nibbles(q)], axis=1)

    raise ValueError(f"{dtype.name} is not a block-quantized type")


def quantize(tensor: torch.Tensor, dtype: DataType) -> QuantizedTensor:
    if tensor.shape[-1] % QK != 0:
        raise ValueError(
            f"Cannot quantize {tuple(tensor.shape)} to {dtype.name}: "
            f"row length must be a multiple of {QK}"
        )
    x = tensor.detach().to(torch.float32).cpu().numpy().reshape(-1, QK)
    blocks = _quantize_blocks(dtype, x)
    return QuantizedTensor(dtype=dtype, shape=tuple(tensor.shape), blocks=np.ascontiguousarray(blocks))


def dequantize(tensor: "torch.Tensor | QuantizedTensor") -> torch.Tensor:
    if isinstance(tensor, QuantizedTensor):
        return tensor.dequantize()
    return tensor.to(torch.float32)


def convert(tensor: torch.Tensor, dtype: DataType) -> "torch.Tensor | QuantizedTensor":
    if dtype is DataType.F32:
        return tensor.to(torch.float32).contiguous()
    if dtype is DataType.F16:
        return tensor.to(torch.float16).contiguous()
    return quantize(tensor, dtype)


def tensor_dtype(tensor: "torch.Tensor | QuantizedTensor") -> DataType:
    if isinstance(tensor, QuantizedTensor):
        return tensor.dtype
    if tensor.dtype == torch.float16:
        return DataType.F16
    if tensor.dtype == torch.float32:
        return DataType.F32
    raise ValueError(f"Unsupported tensor dtype: {tensor.dtype}")


def decode_tensor(dtype: DataType, shape: tuple[int, ...], raw: bytes) -> torch.Tensor:
    """Raw stored bytes -> float32 tensor of ``shape``."""
    if dtype is DataType.F32:
        values = np.frombuffer(raw, dtype="<f4").astype(np.float32)
    elif dtype is DataType.F16:
        values = np.frombuffer(raw, dtype="<f2").astype(np.float32)
    else:
        return QuantizedTensor.from_bytes(dtype, shape, raw).dequantize()
    return torch.from_numpy(values.reshape(shape))


def encode_tensor(tensor: "torch.Tensor | QuantizedTensor") -> bytes:
    if isinstance(tensor, QuantizedTensor):
        return tensor.to_bytes()
    if tensor.dtype == torch.float16:
        return tensor.detach().cpu().numpy().astype("<f2").tobytes()
    return tensor.detach().to(torch.float32).cpu().numpy().astype("<f4").tobytes()


GPT2_QUANTIZE_PATTERNS = (
    "model/wte",
    "model/lm_head",
    r"model/h\d+/attn/c_attn/w",
    r"model/h\d+/attn/c_proj/w",
    r"model/h\d+/mlp/c_fc/w",
    r"model/h\d+/mlp/c_proj/w",
)


@dataclass
class QuantizationConfig:
    dtype: DataType
    quantize_patterns: Sequence[str] = ()
    skip_patterns: Sequence[str] = ()
    _compiled: tuple = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self._compiled = (
            [re.compile(p) for p in self.quantize_patterns],
            [re.compile(p) for p in self.skip_patterns],
        )

    def applies_to(self, path: str, shape: tuple[int, ...]) -> bool:
        if len(shape) != 2:
            return False
        quantize_res, skip_res = self._compiled
        if not any(r.fullmatch(path) for r in quantize_res):
            return False
        return not any(r.fullmatch(path) for r in skip_res)

    @classmethod
    def for_gpt2(cls, dtype: DataType) -> "QuantizationConfig":
        return cls(dtype=dtype, quantize_patterns=GPT2_QUANTIZE_PATTERNS)


def quantization_config(quantization: "str | DataType | None") -> QuantizationConfig | None:
    """Resolve a loader quantization key; ``None`` and ``"none"`` keep stored precision."""
    if quantization is None:
        return None
    if isinstance(quantization, str):
        if quantization.lower() == "none":
            return None
        quantization = DataType.from_name(quantization)
    if quantization is DataType.F32:
        raise ValueError("F32 is not a quantization level")
    return QuantizationConfig.for_gpt2(quantization)
