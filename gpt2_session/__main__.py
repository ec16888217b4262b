"""Complete a prompt from the command line.

    python -m gpt2_session --model gpt2-117M --quantization q8_0 --tokens 7 "The meaning of life is:"
"""

import argparse
import logging
import sys
from pathlib import Path

from gpt2_decode import ArgmaxSampler, Cancellable, Cancelled, DefinedLanguageModel, TopKTopPSampler

from .config import LoaderConfig
from .loader import LocalModelSource, model_key

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="gpt2_session", description="Complete a prompt with a GPT-2 model")
    parser.add_argument("prompt", type=str)
    parser.add_argument("--model", type=str, default="gpt2-117M", choices=[f"gpt2-{m.value}" for m in DefinedLanguageModel])
    parser.add_argument("--quantization", type=str, default=None, help="none, f16, q8_0, q5_0, q5_1, q4_0 or q4_1")
    parser.add_argument("--models-dir", type=Path, default=None)
    parser.add_argument("--tokens", type=int, default=10)
    parser.add_argument("--stream", type=int, default=0, help="print a fragment every N tokens")
    parser.add_argument("--top-k", type=int, default=None, help="sample from the top k tokens instead of greedily")
    parser.add_argument("--top-p", type=float, default=1.0)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--max-cache-tokens", type=int, default=None)
    parser.add_argument("--log-level", type=str, default="WARNING")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = LoaderConfig(models_dir=args.models_dir) if args.models_dir else LoaderConfig.from_env()
    key = model_key(args.model, args.quantization)

    def progress(received: int, total: int) -> None:
        if received >= 0:
            logger.debug("Read %d/%d bytes", received, total)

    cancellable = Cancellable()
    try:
        model = LocalModelSource(config)(key.architecture, key.quantization, cancellable, progress)
    except (OSError, ValueError) as error:
        print(f"error: {error}", file=sys.stderr)
        return 1

    if args.top_k is not None:
        sampler = TopKTopPSampler(top_k=args.top_k, top_p=args.top_p, seed=args.seed)
    else:
        sampler = ArgmaxSampler()
    cursor = model.create_completion(args.prompt, args.max_cache_tokens, sampler)

    try:
        if args.stream > 0:
            for fragment, _ in cursor.exec_stream(args.tokens, args.stream, cancellable):
                print(fragment, end="", flush=True)
            print()
        else:
            text, _ = cursor.exec(args.tokens, cancellable)
            print(text)
    except KeyboardInterrupt:
        cancellable.cancel()
        return 130
    except Cancelled:
        return 130
    finally:
        cursor.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
