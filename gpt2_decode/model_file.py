"""
Reader and writer for the legacy ggml GPT-2 model file.

Layout (little endian):

    u32 magic 0x67676d6c
    i32 n_vocab, n_ctx, n_embd, n_head, n_layer, ftype
    i32 n_words, then per word: u32 length, bytes
    tensors until EOF:
        i32 n_dims, i32 name_length, i32 type
        i32 dims[n_dims]          (innermost dimension first)
        name bytes, raw data
"""

import logging
import struct
from collections.abc import Callable
from typing import BinaryIO

from .cancellation import Cancellable
from .errors import FormatError
from .forward import GPT2Hyperparameters
from .quantize import DataType, convert, decode_tensor, encode_tensor, tensor_dtype
from .tokenizer import TokenDictionary
from .weights import TensorDesc, WeightRegistry

logger = logging.getLogger(__name__)

GGML_MAGIC = 0x67676D6C

ProgressCallback = Callable[[int, int], None]


class ProgressReader:
    """Wraps a binary stream, reporting ``(bytes_read, total)`` after each read.

    ``bytes_read == -1`` is reported once up front to signal a reset.
    """

    def __init__(self, stream: BinaryIO, total: int, callback: ProgressCallback | None = None):
        self.stream = stream
        self.total = total
        self.callback = callback
        self.bytes_read = 0
        if callback is not None:
            callback(-1, total)

    def read(self, size: int = -1) -> bytes:
        data = self.stream.read(size)
        if data:
            self.bytes_read += len(data)
            if self.callback is not None:
                self.callback(self.bytes_read, self.total)
        return data


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise FormatError(f"Unexpected end of model file: wanted {size} bytes, got {len(data)}")
    return data


def _read_i32(stream: BinaryIO) -> int:
    return struct.unpack("<i", _read_exact(stream, 4))[0]


def read_hyperparameters(stream: BinaryIO) -> GPT2Hyperparameters:
    magic = struct.unpack("<I", _read_exact(stream, 4))[0]
    if magic != GGML_MAGIC:
        raise FormatError(f"Invalid model file magic {magic:#010x}, expected {GGML_MAGIC:#010x}")

    n_vocab, n_ctx, n_embd, n_head, n_layer, ftype = struct.unpack("<6i", _read_exact(stream, 24))
    try:
        return GPT2Hyperparameters(
            n_vocab=n_vocab,
            n_ctx=n_ctx,
            n_embd=n_embd,
            n_head=n_head,
            n_layer=n_layer,
            ftype=ftype,
        )
    except (ValueError, ZeroDivisionError) as e:
        raise FormatError(f"Invalid hyperparameters: {e}") from e


def read_token_dictionary(stream: BinaryIO, n_vocab: int) -> TokenDictionary:
    n_words = _read_i32(stream)
    if n_words != n_vocab:
        raise FormatError(f"Dictionary has {n_words} words but the model expects {n_vocab}")

    words = []
    for _ in range(n_words):
        length = struct.unpack("<I", _read_exact(stream, 4))[0]
        words.append(_read_exact(stream, length))
    return TokenDictionary(words)


def read_tensors(
    stream: BinaryIO,
    desc: dict[str, TensorDesc],
    cancellable: Cancellable | None = None,
) -> WeightRegistry:
    """Read tensors until EOF, converting each to the dtype ``desc`` asks for."""
    registry = WeightRegistry()
    loaded: set[str] = set()

    while True:
        if cancellable is not None:
            cancellable.raise_if_cancelled()

        header = stream.read(12)
        if not header:
            break
        if len(header) != 12:
            raise FormatError("Truncated tensor header")

        n_dims, name_len, ttype = struct.unpack("<3i", header)
        if not 0 < n_dims <= 4 or name_len <= 0:
            raise FormatError(f"Invalid tensor header: n_dims={n_dims} name_len={name_len}")
        dims = struct.unpack(f"<{n_dims}i", _read_exact(stream, 4 * n_dims))
        name = _read_exact(stream, name_len).decode("utf-8")

        if name not in desc:
            raise FormatError(f"Tensor {name} not found in model definition")
        try:
            stored = DataType(ttype)
        except ValueError:
            raise FormatError(f"Tensor {name} has unknown type id {ttype}") from None

        expected = desc[name]
        shape = tuple(reversed(dims))
        n_elements = 1
        for dim in shape:
            n_elements *= dim
        if n_elements != expected.n_elements:
            raise FormatError(
                f"Tensor {name} has {n_elements} elements, expected {expected.n_elements}"
            )
        if n_elements % stored.block_size != 0:
            raise FormatError(f"Tensor {name} is not a whole number of {stored.name} blocks")

        raw = _read_exact(stream, stored.n_bytes(n_elements))
        values = decode_tensor(stored, shape, raw).reshape(expected.shape)
        registry.insert(name, convert(values, expected.dtype))
        loaded.add(name)
        logger.debug("loaded %s %s %s -> %s", name, shape, stored.name, expected.dtype.name)

    if "model/lm_head" in desc and "model/lm_head" not in loaded and "model/wte" in loaded:
        registry.insert("model/lm_head", registry.get("model/wte"))
        loaded.add("model/lm_head")

    missing = sorted(set(desc) - loaded)
    if missing:
        raise FormatError(f"Model file is missing tensors: {', '.join(missing)}")
    return registry


def write_model_file(
    stream: BinaryIO,
    hparams: GPT2Hyperparameters,
    dictionary: TokenDictionary,
    weights: WeightRegistry,
) -> None:
    stream.write(struct.pack(
        "<I6i",
        GGML_MAGIC,
        hparams.n_vocab,
        hparams.n_ctx,
        hparams.n_embd,
        hparams.n_head,
        hparams.n_layer,
        hparams.ftype,
    ))

    stream.write(struct.pack("<i", len(dictionary)))
    for word in dictionary.words:
        stream.write(struct.pack("<I", len(word)))
        stream.write(word)

    flat = weights.flatten()
    tied = flat.get("model/lm_head") is not None and flat.get("model/lm_head") is flat.get("model/wte")
    for path, tensor in flat.items():
        if tied and path == "model/lm_head":
            continue
        shape = tuple(tensor.shape)
        name = path.encode("utf-8")
        stream.write(struct.pack("<3i", len(shape), len(name), tensor_dtype(tensor).value))
        stream.write(struct.pack(f"<{len(shape)}i", *reversed(shape)))
        stream.write(name)
        stream.write(encode_tensor(tensor))
