"""Inference backend interfaces.

The generation controller codes against these protocols. The MLX
implementation lives in models/loader.py; tests provide scripted fakes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from models.registry import ModelProfile

# Called with a completed fraction in [0.0, 1.0] while weights are fetched
ProgressCallback = Callable[[float], None]


class Tokenizer(Protocol):
    """Text <-> token id conversion for a loaded model."""

    @property
    def unk_token_id(self) -> int | None:
        """Id of the unknown token, or None if the vocabulary has none."""
        ...

    @property
    def eos_token_id(self) -> int | None:
        """Id of the end-of-sequence token, or None if the vocabulary has none."""
        ...

    def encode(self, text: str) -> list[int]:
        """Encode text into token ids.

        Args:
            text: Fully prepared prompt text.

        Returns:
            Token ids for the text.
        """
        ...

    def decode(self, tokens: Sequence[int]) -> str:
        """Decode a complete token id sequence into text.

        Callers always pass the full accumulated sequence since some
        tokenizers cannot decode merged or multi-byte tokens one at a time.
        """
        ...


class InferenceBackend(Protocol):
    """Interface for the engine that loads weights and samples tokens."""

    def load(self, profile: ModelProfile, on_progress: ProgressCallback) -> tuple[Any, Tokenizer]:
        """Fetch and initialize a model and tokenizer pair.

        Args:
            profile: Profile describing the model to load.
            on_progress: Invoked with the fetch fraction, possibly from a
                background thread.

        Returns:
            Tuple of (model handle, tokenizer).

        Raises:
            ModelLoadError: If weights or tokenizer cannot be fetched or built.
        """
        ...

    def sample(self, model: Any, prompt_tokens: Sequence[int], temperature: float) -> Iterator[int]:
        """Return a lazy, unbounded iterator of sampled next-token ids.

        The iterator never stops on its own; the caller owns every stop
        decision (EOS, token budget, cancellation).
        """
        ...

    def seed(self, value: int) -> None:
        """Re-seed the backend's pseudo-random generator."""
        ...

    def set_working_set_ceiling(self, limit_bytes: int) -> None:
        """Cap memory used for cached intermediate buffers."""
        ...

    def resident_bytes(self) -> int:
        """Return bytes currently held by the backend (weights and buffers)."""
        ...
