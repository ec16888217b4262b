from dataclasses import dataclass

import torch

from .errors import OutOfBounds


@dataclass
class KVCache:
    """Per-layer key/value memory shared by every step of one cursor.

    ``memory_k`` and ``memory_v`` are flat buffers of ``n_layer * n_ctx * d_model``
    floats; the rows for ``(layer, time_offset)`` start at
    ``d_model * (layer * n_ctx + time_offset)``.
    """

    memory_k: torch.Tensor
    memory_v: torch.Tensor
    n_layer: int
    n_ctx: int
    d_model: int

    @classmethod
    def create(
        cls,
        n_layer: int,
        n_ctx: int,
        d_model: int,
        device: torch.device | None = None,
    ) -> "KVCache":
        n_elements = n_layer * n_ctx * d_model
        return cls(
            memory_k=torch.zeros(n_elements, dtype=torch.float32, device=device),
            memory_v=torch.zeros(n_elements, dtype=torch.float32, device=device),
            n_layer=n_layer,
            n_ctx=n_ctx,
            d_model=d_model,
        )

    def _offset(self, layer: int, time_offset: int) -> int:
        return self.d_model * (layer * self.n_ctx + time_offset)

    def _check(self, layer: int, time_offset: int, n_tokens: int) -> None:
        if not 0 <= layer < self.n_layer:
            raise OutOfBounds(f"Layer {layer} out of range for {self.n_layer} layers")
        if time_offset < 0 or n_tokens < 0 or time_offset + n_tokens > self.n_ctx:
            raise OutOfBounds(
                f"KV cache access [{time_offset}, {time_offset + n_tokens}) "
                f"exceeds context length {self.n_ctx}"
            )

    def write(
        self,
        layer: int,
        time_offset: int,
        n_tokens: int,
        k_values: torch.Tensor,
        v_values: torch.Tensor,
    ) -> None:
        self._check(layer, time_offset, n_tokens)
        n_values = n_tokens * self.d_model
        if k_values.numel() != n_values or v_values.numel() != n_values:
            raise OutOfBounds(
                f"Expected {n_values} values for {n_tokens} tokens, "
                f"got k={k_values.numel()} v={v_values.numel()}"
            )

        start = self._offset(layer, time_offset)
        self.memory_k[start:start + n_values] = k_values.reshape(-1)
        self.memory_v[start:start + n_values] = v_values.reshape(-1)

    def read_view(
        self,
        layer: int,
        start: int,
        end: int,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        self._check(layer, start, end - start)
        lo = self._offset(layer, start)
        hi = self._offset(layer, end)
        k = self.memory_k[lo:hi].view(end - start, self.d_model)
        v = self.memory_v[lo:hi].view(end - start, self.d_model)
        return k, v

    def memory_bytes(self) -> int:
        return self.memory_k.numel() * self.memory_k.element_size() * 2
