import logging
import math
from dataclasses import dataclass

import torch
import torch.nn.functional as F

from .errors import OutOfBounds
from .kv_cache import KVCache
from .quantize import QuantizedTensor, dequantize
from .weights import WeightRegistry

logger = logging.getLogger(__name__)

LAYER_NORM_EPS = 1e-5


@dataclass(frozen=True)
class GPT2Hyperparameters:
    n_vocab: int
    n_ctx: int
    n_embd: int
    n_head: int
    n_layer: int
    ftype: int = 1

    @property
    def d_model(self) -> int:
        return self.n_embd

    @property
    def d_ff(self) -> int:
        return 4 * self.n_embd

    @property
    def head_dim(self) -> int:
        return self.n_embd // self.n_head

    def __post_init__(self):
        if self.n_embd % self.n_head != 0:
            raise ValueError(f"n_embd={self.n_embd} is not divisible by n_head={self.n_head}")


def linear(
    x: torch.Tensor,
    weight: "torch.Tensor | QuantizedTensor",
    bias: torch.Tensor | None = None,
) -> torch.Tensor:
    """x @ W^T + b in float32; W is stored (out_features, in_features)."""
    w = dequantize(weight)
    b = bias.to(torch.float32) if bias is not None else None
    return F.linear(x, w, b)


def embedding_rows(weight: "torch.Tensor | QuantizedTensor", ids: torch.Tensor) -> torch.Tensor:
    if isinstance(weight, QuantizedTensor):
        return weight.rows(ids)
    return weight[ids].to(torch.float32)


def layer_norm(x: torch.Tensor, gain: torch.Tensor, bias: torch.Tensor) -> torch.Tensor:
    return F.layer_norm(
        x,
        (x.shape[-1],),
        gain.to(torch.float32),
        bias.to(torch.float32),
        eps=LAYER_NORM_EPS,
    )


def causal_self_attention(
    x: torch.Tensor,
    weights: WeightRegistry,
    prefix: str,
    hparams: GPT2Hyperparameters,
    layer: int,
    n_past: int,
    kv_cache: KVCache,
) -> torch.Tensor:
    n_tokens = x.shape[0]
    d_model = hparams.d_model
    n_head = hparams.n_head
    head_dim = hparams.head_dim
    full_len = n_past + n_tokens

    qkv = linear(x, weights.get(f"{prefix}/attn/c_attn/w"), weights.get(f"{prefix}/attn/c_attn/b"))
    q, k, v = qkv.split(d_model, dim=-1)

    kv_cache.write(layer, n_past, n_tokens, k, v)
    k_full, v_full = kv_cache.read_view(layer, 0, full_len)

    q = q.reshape(n_tokens, n_head, head_dim).transpose(0, 1)
    k_full = k_full.reshape(full_len, n_head, head_dim).transpose(0, 1)
    v_full = v_full.reshape(full_len, n_head, head_dim).transpose(0, 1)

    scores = torch.matmul(q, k_full.transpose(-2, -1)) / math.sqrt(head_dim)

    # A single new token may attend to the whole history.
    if n_tokens > 1:
        mask = torch.triu(
            torch.ones(n_tokens, full_len, dtype=torch.bool, device=x.device),
            diagonal=n_past + 1,
        )
        scores = scores.masked_fill(mask, float("-inf"))

    attn = torch.matmul(F.softmax(scores, dim=-1), v_full)
    attn = attn.transpose(0, 1).reshape(n_tokens, d_model)
    return linear(attn, weights.get(f"{prefix}/attn/c_proj/w"), weights.get(f"{prefix}/attn/c_proj/b"))


def feed_forward(x: torch.Tensor, weights: WeightRegistry, prefix: str) -> torch.Tensor:
    h = linear(x, weights.get(f"{prefix}/mlp/c_fc/w"), weights.get(f"{prefix}/mlp/c_fc/b"))
    h = F.gelu(h, approximate="tanh")
    return linear(h, weights.get(f"{prefix}/mlp/c_proj/w"), weights.get(f"{prefix}/mlp/c_proj/b"))


def decoder_layer(
    x: torch.Tensor,
    weights: WeightRegistry,
    hparams: GPT2Hyperparameters,
    layer: int,
    n_past: int,
    kv_cache: KVCache,
) -> torch.Tensor:
    prefix = f"model/h{layer}"
    h = layer_norm(x, weights.get(f"{prefix}/ln_1/g"), weights.get(f"{prefix}/ln_1/b"))
    x = x + causal_self_attention(h, weights, prefix, hparams, layer, n_past, kv_cache)
    h = layer_norm(x, weights.get(f"{prefix}/ln_2/g"), weights.get(f"{prefix}/ln_2/b"))
    return x + feed_forward(h, weights, prefix)


@torch.no_grad()
def gpt2_forward_pass(
    weights: WeightRegistry,
    hparams: GPT2Hyperparameters,
    tokens: list[int],
    n_past: int,
    kv_cache: KVCache,
) -> torch.Tensor:
    """Run ``tokens`` at positions ``n_past..`` and return logits (n_tokens, n_vocab).

    Keys and values for the new positions are written into ``kv_cache``;
    earlier positions are read from it and never recomputed.
    """
    n_tokens = len(tokens)
    if n_tokens == 0:
        raise ValueError("Forward pass needs at least one token")
    n_ctx = min(hparams.n_ctx, kv_cache.n_ctx)
    if n_past + n_tokens > n_ctx:
        raise OutOfBounds(
            f"Positions up to {n_past + n_tokens} exceed the context length of {n_ctx}"
        )

    device = kv_cache.memory_k.device
    ids = torch.tensor(tokens, dtype=torch.long, device=device)
    positions = torch.arange(n_past, n_past + n_tokens, device=device)

    x = embedding_rows(weights.get("model/wte"), ids) + embedding_rows(weights.get("model/wpe"), positions)

    for layer in range(hparams.n_layer):
        x = decoder_layer(x, weights, hparams, layer, n_past, kv_cache)

    x = layer_norm(x, weights.get("model/ln_f/g"), weights.get("model/ln_f/b"))
    logits = linear(x, weights.get("model/lm_head"))

    logger.debug("forward pass: n_past=%d n_tokens=%d", n_past, n_tokens)
    return logits
