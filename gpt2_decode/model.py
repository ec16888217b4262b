import logging
import os
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import BinaryIO

import torch

from .cancellation import Cancellable
from .cursor import CompletionCursor, create_completion
from .forward import GPT2Hyperparameters, gpt2_forward_pass
from .kv_cache import KVCache
from .model_file import ProgressCallback, ProgressReader, read_hyperparameters, read_tensors, read_token_dictionary
from .quantize import DataType, QuantizationConfig, convert, quantization_config
from .sampler import LanguageModelSampler
from .tokenizer import TokenDictionary
from .weights import Group, Leaf, TensorDesc, WeightRegistry, flatten_tree, map_tree

logger = logging.getLogger(__name__)

REMOTE_MODEL_BASE_URL = "https://huggingface.co/ggerganov/ggml/resolve/main"

ForwardFn = Callable[[WeightRegistry, GPT2Hyperparameters, list[int], int, KVCache], torch.Tensor]


class DefinedLanguageModel(Enum):
    GPT2_117M = "117M"
    GPT2_345M = "345M"
    GPT2_774M = "774M"
    GPT2_1558M = "1558M"

    @property
    def file_name(self) -> str:
        return f"ggml-model-gpt-2-{self.value}.bin"

    @property
    def remote_url(self) -> str:
        return f"{REMOTE_MODEL_BASE_URL}/{self.file_name}"

    @classmethod
    def from_name(cls, name: "str | DefinedLanguageModel") -> "DefinedLanguageModel":
        if isinstance(name, cls):
            return name
        key = name.upper().replace("-", "_")
        if not key.startswith("GPT2_"):
            key = f"GPT2_{key}"
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"Unknown model: {name}") from None


def gpt2_model_desc(hparams: GPT2Hyperparameters) -> Group:
    """Shapes and storage types of every GPT-2 weight, in (out, in) order."""
    d_model = hparams.d_model
    d_ff = hparams.d_ff

    def leaf(shape: tuple[int, ...], dtype: DataType = DataType.F32) -> Leaf:
        return Leaf(TensorDesc(shape, dtype))

    def norm() -> Group:
        return Group({"g": leaf((d_model,)), "b": leaf((d_model,))})

    def projection(n_out: int, n_in: int) -> Group:
        return Group({"w": leaf((n_out, n_in), DataType.F16), "b": leaf((n_out,))})

    model = Group({
        "ln_f": norm(),
        "wte": leaf((hparams.n_vocab, d_model), DataType.F16),
        "wpe": leaf((hparams.n_ctx, d_model)),
        "lm_head": leaf((hparams.n_vocab, d_model), DataType.F16),
    })
    for i in range(hparams.n_layer):
        model.children[f"h{i}"] = Group({
            "ln_1": norm(),
            "ln_2": norm(),
            "attn": Group({
                "c_attn": projection(3 * d_model, d_model),
                "c_proj": projection(d_model, d_model),
            }),
            "mlp": Group({
                "c_fc": projection(d_ff, d_model),
                "c_proj": projection(d_model, d_ff),
            }),
        })
    return Group({"model": model})


def apply_quantization_config(desc: Group, config: QuantizationConfig | None) -> Group:
    if config is None:
        return desc

    def quantize_leaf(path: str, leaf: TensorDesc) -> TensorDesc:
        if config.applies_to(path, leaf.shape):
            return TensorDesc(leaf.shape, config.dtype)
        return leaf

    return map_tree(desc, quantize_leaf)


class LanguageModel:
    def __init__(
        self,
        hparams: GPT2Hyperparameters,
        dictionary: TokenDictionary,
        weights: WeightRegistry,
        forward_fn: ForwardFn = gpt2_forward_pass,
    ):
        if len(dictionary) != hparams.n_vocab:
            raise ValueError(f"Dictionary has {len(dictionary)} words, expected {hparams.n_vocab}")
        self.hparams = hparams
        self.dictionary = dictionary
        self.weights = weights
        self.forward_fn = forward_fn

    def hyperparameters(self) -> GPT2Hyperparameters:
        return self.hparams

    def get(self, path: str) -> "torch.Tensor":
        return self.weights.get(path)

    @property
    def eos_token_id(self) -> int | None:
        return self.dictionary.eos_token_id

    def tokenize(self, text: str) -> list[int]:
        return self.dictionary.encode(text)

    def forward(self, tokens: list[int], n_past: int, kv_cache: KVCache) -> torch.Tensor:
        return self.forward_fn(self.weights, self.hparams, tokens, n_past, kv_cache)

    def create_completion(
        self,
        prompt: str,
        max_cache_tokens: int | None = None,
        sampler: LanguageModelSampler | None = None,
    ) -> CompletionCursor:
        return create_completion(self, prompt, max_cache_tokens=max_cache_tokens, sampler=sampler)

    def memory_bytes(self) -> int:
        total = 0
        # Tied weights are counted once.
        unique = {id(t): t for t in self.weights.flatten().values()}
        for tensor in unique.values():
            if isinstance(tensor, torch.Tensor):
                total += tensor.numel() * tensor.element_size()
            else:
                total += tensor.blocks.nbytes
        return total

    @classmethod
    def load(
        cls,
        stream: BinaryIO,
        quantization: "str | DataType | None" = None,
        cancellable: Cancellable | None = None,
    ) -> "LanguageModel":
        hparams = read_hyperparameters(stream)
        dictionary = read_token_dictionary(stream, hparams.n_vocab)
        desc = apply_quantization_config(gpt2_model_desc(hparams), quantization_config(quantization))
        weights = read_tensors(stream, flatten_tree(desc), cancellable)
        logger.info(
            "Loaded GPT-2 model: n_layer=%d n_embd=%d n_vocab=%d quantization=%s",
            hparams.n_layer,
            hparams.n_embd,
            hparams.n_vocab,
            quantization or "none",
        )
        return cls(hparams, dictionary, weights)

    @classmethod
    def from_path(
        cls,
        path: str | os.PathLike,
        quantization: "str | DataType | None" = None,
        cancellable: Cancellable | None = None,
        progress: ProgressCallback | None = None,
    ) -> "LanguageModel":
        path = Path(path)
        with path.open("rb") as f:
            stream = ProgressReader(f, path.stat().st_size, progress)
            return cls.load(stream, quantization, cancellable)

    @classmethod
    def random(
        cls,
        hparams: GPT2Hyperparameters,
        dictionary: TokenDictionary,
        quantization: "str | DataType | None" = None,
        seed: int = 0,
    ) -> "LanguageModel":
        """Randomly initialised model with the real GPT-2 layout."""
        generator = torch.Generator().manual_seed(seed)
        desc = apply_quantization_config(gpt2_model_desc(hparams), quantization_config(quantization))
        weights = WeightRegistry()
        for path, leaf in flatten_tree(desc).items():
            if path == "model/lm_head":
                continue
            if path.endswith("/g"):
                values = torch.ones(leaf.shape)
            elif path.endswith("/b"):
                values = torch.zeros(leaf.shape)
            else:
                values = torch.randn(leaf.shape, generator=generator) * 0.2
            weights.insert(path, convert(values, leaf.dtype))
        weights.insert("model/lm_head", weights.get("model/wte"))
        return cls(hparams, dictionary, weights)
