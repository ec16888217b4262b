import re
from collections.abc import Iterable

EOS_TOKEN = b"<|endoftext|>"

# GPT-2 pre-tokenizer: contractions, letter runs, digit runs, symbol runs, whitespace.
GPT2_SPLIT_PATTERN = re.compile(
    r"""'s|'t|'re|'ve|'m|'ll|'d| ?[^\W\d_]+| ?\d+| ?(?:[^\s\w]|_)+|\s+(?!\S)|\s+"""
)


class TokenDictionary:
    """Vocabulary of byte strings, indexed by token id."""

    def __init__(self, words: Iterable[bytes | str]):
        self.words: list[bytes] = [w.encode("utf-8") if isinstance(w, str) else bytes(w) for w in words]
        self.word_to_id: dict[bytes, int] = {}
        for idx, word in enumerate(self.words):
            self.word_to_id.setdefault(word, idx)
        self.max_word_len = max((len(w) for w in self.words), default=0)

    def __len__(self) -> int:
        return len(self.words)

    def lookup(self, word: bytes | str) -> int | None:
        if isinstance(word, str):
            word = word.encode("utf-8")
        return self.word_to_id.get(word)

    @property
    def eos_token_id(self) -> int | None:
        return self.word_to_id.get(EOS_TOKEN)

    def _encode_piece(self, piece: bytes, out: list[int]) -> None:
        start = 0
        while start < len(piece):
            longest = min(len(piece), start + self.max_word_len)
            for end in range(longest, start, -1):
                token = self.word_to_id.get(piece[start:end])
                if token is not None:
                    out.append(token)
                    start = end
                    break
            else:
                # No word starts here; drop the byte.
                start += 1

    def encode(self, text: str) -> list[int]:
        tokens: list[int] = []
        for match in GPT2_SPLIT_PATTERN.finditer(text):
            self._encode_piece(match.group(0).encode("utf-8"), tokens)
        return tokens

    def decode(self, ids: Iterable[int]) -> bytes:
        return b"".join(self.words[i] for i in ids)

    def decode_text(self, ids: Iterable[int]) -> str:
        return self.decode(ids).decode("utf-8", errors="replace")
