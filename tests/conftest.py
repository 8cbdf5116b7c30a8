"""Pytest configuration for LLMEval tests.

Provides a scripted in-memory inference backend so the controller can be
tested without MLX, plus fixtures that isolate the shared config and
registry singletons.
"""

from __future__ import annotations

import importlib.util
import threading
from collections.abc import Callable, Iterator, Sequence
from typing import Any

import pytest

from llmeval.config import LLMEvalConfig, reset_config
from llmeval.errors import ModelLoadError
from models.registry import ModelProfile, reset_registry

EOS_ID = 2
UNK_ID = 0

MLX_AVAILABLE = importlib.util.find_spec("mlx_lm") is not None

# Pytest marker for tests that exercise the real MLX backend
requires_mlx = pytest.mark.skipif(
    not MLX_AVAILABLE,
    reason="mlx_lm not available (requires macOS Apple Silicon)",
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTokenizer:
    """Whitespace tokenizer over a growing vocabulary.

    Ids 0 and 2 are reserved for the unknown and end-of-sequence tokens.
    """

    unk_token_id = UNK_ID
    eos_token_id = EOS_ID

    def __init__(self) -> None:
        self.encoded: list[str] = []
        self.decode_calls = 0

    def encode(self, text: str) -> list[int]:
        self.encoded.append(text)
        return [10 + i for i, _ in enumerate(text.split())]

    def decode(self, tokens: Sequence[int]) -> str:
        self.decode_calls += 1
        return " ".join(f"tok{t}" for t in tokens)


class FakeBackend:
    """Scripted InferenceBackend.

    Attributes:
        tokens: Ids yielded by sample(); after they run out, `fill` repeats forever.
        fill: Id yielded once the script is exhausted (None = stop the stream).
        load_failures: Number of load() calls that raise before one succeeds.
        progress_ticks: Fractions reported through on_progress during load().
        on_token: Called with each yielded id, before it is yielded.
    """

    def __init__(
        self,
        tokens: Sequence[int] = (),
        *,
        fill: int | None = 7,
        load_failures: int = 0,
        progress_ticks: Sequence[float] = (0.0, 0.5, 1.0),
        load_delay: float = 0.0,
        resident_bytes: int = 42 * 1024 * 1024,
    ) -> None:
        self.tokens = list(tokens)
        self.fill = fill
        self.load_failures = load_failures
        self.progress_ticks = list(progress_ticks)
        self.load_delay = load_delay
        self._resident_bytes = resident_bytes
        self.on_token: Callable[[int], None] | None = None

        self.model = object()
        self.tokenizer = FakeTokenizer()
        self.load_calls = 0
        self.loaded_profiles: list[ModelProfile] = []
        self.seeds: list[int] = []
        self.ceilings: list[int] = []
        self.sample_calls: list[tuple[Any, list[int], float]] = []
        self.closed_streams = 0
        self._lock = threading.Lock()

    def load(
        self, profile: ModelProfile, on_progress: Callable[[float], None]
    ) -> tuple[Any, FakeTokenizer]:
        with self._lock:
            self.load_calls += 1
            self.loaded_profiles.append(profile)
            fail = self.load_failures > 0
            if fail:
                self.load_failures -= 1
        if self.load_delay:
            threading.Event().wait(self.load_delay)
        for fraction in self.progress_ticks:
            on_progress(fraction)
        if fail:
            raise ModelLoadError("weights unavailable", model_name=profile.id)
        return self.model, self.tokenizer

    def sample(self, model: Any, prompt_tokens: Sequence[int], temperature: float) -> Iterator[int]:
        self.sample_calls.append((model, list(prompt_tokens), temperature))
        try:
            for token in self.tokens:
                if self.on_token is not None:
                    self.on_token(token)
                yield token
            while self.fill is not None:
                if self.on_token is not None:
                    self.on_token(self.fill)
                yield self.fill
        finally:
            self.closed_streams += 1

    def seed(self, value: int) -> None:
        self.seeds.append(value)

    def set_working_set_ceiling(self, limit_bytes: int) -> None:
        self.ceilings.append(limit_bytes)

    def resident_bytes(self) -> int:
        return self._resident_bytes


@pytest.fixture(autouse=True)
def isolated_singletons(tmp_path, monkeypatch):
    """Point config at an empty temp file and give each test a fresh registry."""
    monkeypatch.setenv("LLMEVAL_CONFIG", str(tmp_path / "config.json"))
    reset_config()
    reset_registry()
    yield
    reset_config()
    reset_registry()


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def profile() -> ModelProfile:
    return ModelProfile(id="test-org/test-model", prompt_template=lambda p: f"[INST] {p} [/INST]")


@pytest.fixture
def make_evaluator(fake_backend, profile, fake_clock):
    """Factory building an LLMEvaluator wired to the fake backend and clock."""
    from llmeval.evaluator import LLMEvaluator

    def _make(**kwargs: Any) -> LLMEvaluator:
        kwargs.setdefault("backend", fake_backend)
        kwargs.setdefault("profile", profile)
        kwargs.setdefault("config", LLMEvalConfig())
        kwargs.setdefault("clock", fake_clock)
        kwargs.setdefault("seed_fn", lambda: 1234)
        return LLMEvaluator(**kwargs)

    return _make
