from collections.abc import Callable
from typing import Any

import torch


class LanguageModelSampler:
    """Picks the next token id from the logits of the last position."""

    def sample(self, logits: torch.Tensor) -> int:
        raise NotImplementedError

    def getstate(self) -> Any:
        return None

    def setstate(self, state: Any) -> None:
        pass


class ArgmaxSampler(LanguageModelSampler):
    def sample(self, logits: torch.Tensor) -> int:
        return int(logits.argmax().item())


class FunctionalSampler(LanguageModelSampler):
    def __init__(self, fn: Callable[[torch.Tensor], int]):
        self.fn = fn

    def sample(self, logits: torch.Tensor) -> int:
        return int(self.fn(logits))


class TopKTopPSampler(LanguageModelSampler):
    """Nucleus sampling over the ``top_k`` most likely tokens.

    Keeps the smallest prefix of the ``top_k`` candidates whose cumulative
    probability reaches ``top_p``, renormalises and draws from it with a
    private generator, so a fixed seed gives a fixed sequence of tokens.
    """

    def __init__(self, top_k: int = 500, top_p: float = 1.0, seed: int | None = None):
        if top_k < 1:
            raise ValueError(f"top_k must be a positive integer, got {top_k}")
        if not 0.0 < top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {top_p}")

        self.top_k = top_k
        self.top_p = top_p
        self.generator = torch.Generator()
        if seed is None:
            self.generator.seed()
        else:
            self.generator.manual_seed(seed)

    def sample(self, logits: torch.Tensor) -> int:
        logits = logits.to(torch.float32).reshape(-1)
        k = min(self.top_k, logits.numel())
        top_logits, top_ids = torch.topk(logits, k)

        probs = torch.softmax(top_logits, dim=-1)
        cumsum = torch.cumsum(probs, dim=-1)
        # Keep every candidate up to and including the one that reaches top_p.
        keep = int((cumsum < self.top_p).sum().item()) + 1
        probs = probs[:keep] / probs[:keep].sum()

        choice = torch.multinomial(probs, 1, generator=self.generator)
        return int(top_ids[choice].item())

    def getstate(self) -> torch.Tensor:
        return self.generator.get_state()

    def setstate(self, state: torch.Tensor) -> None:
        self.generator.set_state(state)
