"""Benchmarks for incremental decoding

Compares cached decoding against recomputing the whole prefix every step,
and the weight memory / decode speed of each quantization level, on a
randomly initialised model with the GPT-2 layout.
"""

import json
import time
from dataclasses import asdict

import torch

from .forward import GPT2Hyperparameters
from .kv_cache import KVCache
from .model import LanguageModel
from .tokenizer import TokenDictionary


def benchmark_recompute(model: LanguageModel, prompt: list[int], max_new_tokens: int) -> dict:
    """Feed the whole sequence through a fresh cache on every step."""
    hparams = model.hyperparameters()
    tokens = list(prompt)
    times = []

    for _ in range(max_new_tokens):
        start = time.perf_counter()
        cache = KVCache.create(hparams.n_layer, hparams.n_ctx, hparams.d_model)
        logits = model.forward(tokens, 0, cache)
        tokens.append(int(logits[-1].argmax()))
        times.append((time.perf_counter() - start) * 1000)

    return {
        "times_ms": times,
        "total_ms": sum(times),
        "first_token_ms": times[0],
        "last_token_ms": times[-1],
    }


def benchmark_cached(model: LanguageModel, prompt: list[int], max_new_tokens: int) -> dict:
    hparams = model.hyperparameters()
    cache = KVCache.create(hparams.n_layer, hparams.n_ctx, hparams.d_model)

    start = time.perf_counter()
    logits = model.forward(prompt, 0, cache)
    prefill_ms = (time.perf_counter() - start) * 1000

    n_past = len(prompt)
    token = int(logits[-1].argmax())
    decode_times = []
    for _ in range(max_new_tokens - 1):
        start = time.perf_counter()
        logits = model.forward([token], n_past, cache)
        n_past += 1
        token = int(logits[-1].argmax())
        decode_times.append((time.perf_counter() - start) * 1000)

    return {
        "prefill_ms": prefill_ms,
        "decode_ms": decode_times,
        "total_ms": prefill_ms + sum(decode_times),
    }


def main():
    hparams = GPT2Hyperparameters(n_vocab=1024, n_ctx=512, n_embd=256, n_head=8, n_layer=6)
    dictionary = TokenDictionary(f"tok{i}" for i in range(hparams.n_vocab))
    max_new_tokens = 32

    results = {"hparams": asdict(hparams), "benchmarks": []}

    print("Incremental decoding benchmarks (CPU, float32 compute)")
    print(f"Model: {hparams.n_layer} layers, {hparams.n_embd} dim, {hparams.n_vocab} vocab")
    print("=" * 70)

    model = LanguageModel.random(hparams, dictionary)
    for prompt_len in [8, 64, 256]:
        prompt = torch.randint(0, hparams.n_vocab, (prompt_len,)).tolist()
        naive = benchmark_recompute(model, prompt, max_new_tokens)
        cached = benchmark_cached(model, prompt, max_new_tokens)
        speedup = naive["total_ms"] / cached["total_ms"]

        print(f"\nPrompt length: {prompt_len}, Generate: {max_new_tokens} tokens")
        print("-" * 70)
        print(f"  Recompute total:  {naive['total_ms']:.2f} ms (last step {naive['last_token_ms']:.2f} ms)")
        print(f"  Cached prefill:   {cached['prefill_ms']:.2f} ms")
        print(f"  Cached decode:    {sum(cached['decode_ms']) / len(cached['decode_ms']):.2f} ms/token")
        print(f"  Speedup:          {speedup:.2f}x")

        results["benchmarks"].append({
            "prompt_len": prompt_len,
            "recompute_total_ms": naive["total_ms"],
            "cached_total_ms": cached["total_ms"],
            "speedup": speedup,
        })

    print("\n" + "=" * 70)
    print("\nQuantization levels:")
    print("-" * 70)
    prompt = torch.randint(0, hparams.n_vocab, (16,)).tolist()
    for quantization in [None, "f16", "q8_0", "q5_1", "q5_0", "q4_1", "q4_0"]:
        quantized = LanguageModel.random(hparams, dictionary, quantization=quantization)
        cached = benchmark_cached(quantized, prompt, 16)
        decode_ms = sum(cached["decode_ms"]) / len(cached["decode_ms"])
        name = quantization or "none"
        print(f"{name:6s}: {quantized.memory_bytes() / 1024 / 1024:7.2f} MB weights, {decode_ms:.2f} ms/token")
        results["benchmarks"].append({
            "quantization": name,
            "weight_bytes": quantized.memory_bytes(),
            "decode_ms_per_token": decode_ms,
        })

    print("\n" + "=" * 70)
    print(json.dumps(results, indent=2))
    return results


if __name__ == "__main__":
    main()
