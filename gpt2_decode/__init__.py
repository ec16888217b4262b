"""
GPT-2 incremental decoding

This package covers:
- A hierarchical weight registry and the ggml GPT-2 model file format
- Block quantization (q4_0, q4_1, q5_0, q5_1, q8_0) with float32 compute
- A flat per-layer KV cache and the per-step forward pass that fills it
- Completion cursors: resumable, cancellable, streamed generation
"""

from .cancellation import Cancellable
from .cursor import DEFAULT_CHUNK_SIZE, CompletionCursor, create_completion
from .errors import Cancelled, CursorBusy, FormatError, NotFound, OutOfBounds
from .forward import GPT2Hyperparameters, gpt2_forward_pass
from .kv_cache import KVCache
from .model import DefinedLanguageModel, LanguageModel, apply_quantization_config, gpt2_model_desc
from .model_file import ProgressReader, read_tensors, write_model_file
from .quantize import DataType, QuantizationConfig, QuantizedTensor, dequantize, quantize
from .sampler import ArgmaxSampler, FunctionalSampler, LanguageModelSampler, TopKTopPSampler
from .tokenizer import TokenDictionary
from .weights import Group, Leaf, TensorDesc, WeightRegistry, flatten_tree, map_tree

__all__ = [
    "Cancellable",
    "Cancelled",
    "CursorBusy",
    "FormatError",
    "NotFound",
    "OutOfBounds",
    "WeightRegistry",
    "Leaf",
    "Group",
    "TensorDesc",
    "flatten_tree",
    "map_tree",
    "DataType",
    "QuantizationConfig",
    "QuantizedTensor",
    "quantize",
    "dequantize",
    "KVCache",
    "GPT2Hyperparameters",
    "gpt2_forward_pass",
    "TokenDictionary",
    "ProgressReader",
    "read_tensors",
    "write_model_file",
    "DefinedLanguageModel",
    "LanguageModel",
    "gpt2_model_desc",
    "apply_quantization_config",
    "LanguageModelSampler",
    "ArgmaxSampler",
    "FunctionalSampler",
    "TopKTopPSampler",
    "DEFAULT_CHUNK_SIZE",
    "CompletionCursor",
    "create_completion",
]
