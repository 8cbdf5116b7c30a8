"""Streaming generation controller.

LLMEvaluator loads a model once, streams sampled tokens into an observable
output buffer, and reports load progress and throughput statistics. It can be
invoked repeatedly without reloading.

Generation flow:
1. Load the model if needed (working-set ceiling, fetch with progress)
2. Apply the profile's prompt template and encode
3. Re-seed the sampler from the wall clock
4. Pull tokens until EOS/unknown, the token budget, or cancellation
5. Publish the final text and tokens/second

Usage:
    from llmeval.evaluator import LLMEvaluator

    evaluator = LLMEvaluator()
    evaluator.subscribe(lambda state: print(state.output))
    result = evaluator.generate("Why is the sky blue?")
    print(evaluator.stat)   # "Init: 0.412s Tokens/second: 31.207"
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Literal

from pydantic import ValidationError

from llmeval.config import GenerationSettings, LLMEvalConfig, get_config
from llmeval.errors import (
    ConfigurationError,
    GenerationCancelled,
    LLMEvalError,
    ModelGenerationError,
    ModelLoadError,
    encode_failed,
    generation_in_progress,
)
from llmeval.state import Dispatcher, EvaluatorState, ObservableState, Subscriber
from models.registry import ModelProfile, ProfileRegistry, default_profile_id, get_registry

if TYPE_CHECKING:
    from contracts.backend import InferenceBackend, Tokenizer

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024

FinishReason = Literal["stop", "length", "cancelled", "error", "busy"]


def wall_clock_seed() -> int:
    """Seed derived from the current time, so every call samples differently."""
    return int(time.time() * 1000)


def _validated_generation_settings(
    base: GenerationSettings, overrides: dict[str, Any]
) -> GenerationSettings:
    """Apply overrides on top of base, enforcing the limits of the config file."""
    try:
        return GenerationSettings.model_validate({**base.model_dump(), **overrides})
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first["loc"])
        raise ConfigurationError(
            f"Invalid {key}: {first['msg']}",
            config_key=f"generation.{key}",
            cause=e,
        ) from e


@dataclass(frozen=True)
class Unloaded:
    """No model loaded yet (or the last attempt failed)."""


@dataclass(frozen=True)
class Loaded:
    """Model and tokenizer handles, reused for the evaluator's lifetime."""

    model: Any
    tokenizer: Tokenizer


LoadState = Unloaded | Loaded


@dataclass
class GenerationResult:
    """Outcome of one generate() call.

    Attributes:
        text: Final decoded output (or the failure message for errors).
        tokens_generated: Output tokens accumulated, EOS excluded.
        prompt_tokens: Length of the encoded prompt.
        init_seconds: Time from the call to the end of prompt encoding.
        decode_seconds: Time from the first sampled token to loop exit.
        tokens_per_second: tokens_generated / decode_seconds.
        finish_reason: stop (EOS/unknown), length (token budget), cancelled,
            error, or busy (another generation was in flight).
        error: Failure message when finish_reason is error or busy.
        exception: The LLMEvalError behind an error or busy result (None otherwise).
    """

    text: str
    tokens_generated: int = 0
    prompt_tokens: int = 0
    init_seconds: float = 0.0
    decode_seconds: float = 0.0
    tokens_per_second: float = 0.0
    finish_reason: FinishReason = "stop"
    error: str | None = None
    exception: LLMEvalError | None = field(default=None, repr=False, compare=False)

    def raise_for_status(self) -> None:
        """Raise the underlying error for error, busy and cancelled results."""
        if self.exception is not None:
            raise self.exception
        if self.finish_reason == "cancelled":
            raise GenerationCancelled(tokens_generated=self.tokens_generated)


class LLMEvaluator:
    """Owns the load state and runs one streaming generation at a time.

    Observable fields (running, output, model_info, stat) are only changed
    through the ObservableState dispatcher. Subscribe to receive snapshots,
    or poll snapshot().

    Not re-entrant: a generate() call made while another is running returns a
    "busy" result immediately and leaves the visible state untouched.
    """

    def __init__(
        self,
        backend: InferenceBackend | None = None,
        profile: ModelProfile | str | None = None,
        *,
        registry: ProfileRegistry | None = None,
        config: LLMEvalConfig | None = None,
        dispatcher: Dispatcher | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        display_every_n_tokens: int | None = None,
        cache_limit_bytes: int | None = None,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.perf_counter,
        seed_fn: Callable[[], int] = wall_clock_seed,
    ) -> None:
        """Initialize the evaluator.

        Args:
            backend: Inference backend. Defaults to MLXBackend.
            profile: Profile or model id. Defaults to config.model.model_id,
                then the platform default profile.
            registry: Registry used to resolve string ids. Defaults to the shared one.
            config: Configuration. Defaults to get_config().
            dispatcher: Context on which visible state changes are applied.
            temperature: Sampling temperature (overrides config).
            max_tokens: Output token budget (overrides config).
            display_every_n_tokens: Output publish cadence (overrides config).
            cache_limit_bytes: Working-set ceiling (overrides config).
            timeout_seconds: Cancel each generation after this long (overrides config).
            clock: Monotonic time source for timing statistics.
            seed_fn: Produces the sampler seed for each generation.

        Raises:
            ConfigurationError: If an override is outside the range the
                config file accepts.
        """
        if config is None:
            config = get_config()
        self.config = config

        registry = registry or get_registry()
        if profile is None:
            profile = config.model.model_id or default_profile_id()
        self.profile = registry.resolve(profile) if isinstance(profile, str) else profile

        overrides = {
            "temperature": temperature,
            "max_tokens": max_tokens,
            "display_every_n_tokens": display_every_n_tokens,
            "timeout_seconds": timeout_seconds,
        }
        gen = _validated_generation_settings(
            config.generation, {k: v for k, v in overrides.items() if v is not None}
        )
        if cache_limit_bytes is None:
            cache_limit_bytes = config.model.cache_limit_mb * BYTES_PER_MB
        elif cache_limit_bytes < 1:
            raise ConfigurationError(
                f"cache_limit_bytes must be positive, got {cache_limit_bytes}",
                config_key="model.cache_limit_mb",
            )
        self.temperature = gen.temperature
        self.max_tokens = gen.max_tokens
        self.display_every_n_tokens = gen.display_every_n_tokens
        self.cache_limit_bytes = cache_limit_bytes
        self.timeout_seconds = gen.timeout_seconds

        if backend is None:
            from models.loader import MLXBackend

            backend = MLXBackend(memory_buffer_multiplier=config.model.memory_buffer_multiplier)
        self.backend = backend

        self._clock = clock
        self._seed_fn = seed_fn
        self._state = ObservableState(dispatcher)
        self._load_state: LoadState = Unloaded()
        self._load_lock = threading.Lock()
        self._ceiling_applied = False
        self._generate_lock = threading.Lock()
        self._cancel_event = threading.Event()

    # Observable state

    @property
    def state(self) -> ObservableState:
        return self._state

    def snapshot(self) -> EvaluatorState:
        return self._state.snapshot()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Receive a snapshot after every visible change. Returns an unsubscribe function."""
        return self._state.subscribe(callback)

    @property
    def running(self) -> bool:
        return self._state.snapshot().running

    @property
    def output(self) -> str:
        return self._state.snapshot().output

    @property
    def model_info(self) -> str:
        return self._state.snapshot().model_info

    @property
    def stat(self) -> str:
        return self._state.snapshot().stat

    # Load state machine

    @property
    def load_state(self) -> LoadState:
        return self._load_state

    def is_loaded(self) -> bool:
        return isinstance(self._load_state, Loaded)

    def ensure_loaded(self) -> tuple[Any, Tokenizer]:
        """Load the model on first use and return the (model, tokenizer) pair.

        Safe to call repeatedly and from several threads: exactly one load
        runs, later calls return the same handles without side effects.

        Raises:
            ModelLoadError: If the backend fails. The evaluator stays
                Unloaded, so the next call retries.
        """
        state = self._load_state
        if isinstance(state, Loaded):
            return state.model, state.tokenizer

        with self._load_lock:
            # Double-check after acquiring lock
            state = self._load_state
            if isinstance(state, Loaded):
                return state.model, state.tokenizer

            profile = self.profile
            try:
                if not self._ceiling_applied:
                    self.backend.set_working_set_ceiling(self.cache_limit_bytes)
                    self._ceiling_applied = True

                def on_progress(fraction: float) -> None:
                    self._state.update(
                        model_info=f"Downloading {profile.id}: {int(fraction * 100)}%"
                    )

                logger.info("Loading model %s", profile.id)
                model, tokenizer = self.backend.load(profile, on_progress)
                weights_mb = self.backend.resident_bytes() // BYTES_PER_MB
            except ModelLoadError:
                logger.error("Failed to load model %s", profile.id)
                raise
            except Exception as e:
                logger.exception("Failed to load model %s", profile.id)
                raise ModelLoadError(
                    f"Failed to load model: {e}",
                    model_name=profile.id,
                    cause=e,
                ) from e

            self._state.update(model_info=f"Loaded {profile.id}.  Weights: {weights_mb}M")
            self._load_state = Loaded(model, tokenizer)
            return model, tokenizer

    load = ensure_loaded

    # Generation

    def cancel(self) -> None:
        """Ask the in-flight generation to stop after the current token.

        A generation that has not yet started is not affected. To cancel a
        call from before it starts, pass it a stop_event instead.
        """
        self._cancel_event.set()

    async def agenerate(
        self,
        prompt: str,
        *,
        stop_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> GenerationResult:
        """Run generate() on a worker thread."""
        return await asyncio.to_thread(
            self.generate, prompt, stop_event=stop_event, timeout_seconds=timeout_seconds
        )

    def generate(
        self,
        prompt: str,
        *,
        stop_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> GenerationResult:
        """Generate a continuation of prompt, streaming it into the output field.

        Never raises: every failure ends with running=False and
        "Failed: <error>" as output, and the evaluator stays usable.

        Args:
            prompt: Raw user prompt; the profile template is applied here.
            stop_event: External cancellation signal, checked once per token.
            timeout_seconds: Cancel after this many seconds (overrides the default).

        Returns:
            GenerationResult describing the outcome.
        """
        if not self._generate_lock.acquire(blocking=False):
            logger.warning("Generation already in progress, rejecting request")
            error = generation_in_progress(self.profile.id)
            return GenerationResult(
                text="", finish_reason="busy", error=str(error), exception=error
            )

        timer: threading.Timer | None = None
        try:
            self._cancel_event.clear()
            timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
            if timeout is not None and timeout > 0:
                timer = threading.Timer(timeout, self._on_timeout, args=(timeout,))
                timer.daemon = True
                timer.start()

            def should_stop() -> bool:
                if self._cancel_event.is_set():
                    return True
                return stop_event is not None and stop_event.is_set()

            return self._generate(prompt, should_stop)
        finally:
            if timer is not None:
                timer.cancel()
            self._generate_lock.release()

    def _on_timeout(self, timeout: float) -> None:
        logger.warning("Generation timed out after %.1f seconds, cancelling", timeout)
        self._cancel_event.set()

    def _generate(self, prompt: str, should_stop: Callable[[], bool]) -> GenerationResult:
        start_time = self._clock()
        try:
            model, tokenizer = self.ensure_loaded()
        except LLMEvalError as e:
            return self._fail(e)

        self._state.update(running=True, output="")

        try:
            return self._stream(model, tokenizer, prompt, start_time, should_stop)
        except LLMEvalError as e:
            return self._fail(e)
        except Exception as e:
            logger.exception("Generation failed")
            return self._fail(
                ModelGenerationError(
                    f"Generation failed: {e}",
                    prompt=prompt,
                    model_name=self.profile.id,
                    cause=e,
                )
            )

    def _stream(
        self,
        model: Any,
        tokenizer: Tokenizer,
        prompt: str,
        start_time: float,
        should_stop: Callable[[], bool],
    ) -> GenerationResult:
        prepared = self.profile.prepare(prompt)
        try:
            prompt_tokens = tokenizer.encode(prepared)
        except Exception as e:
            raise encode_failed(self.profile.id, prepared, e) from e

        init_time = self._clock()
        init_seconds = init_time - start_time
        self._state.update(stat=f"Init: {init_seconds:.3f}s")

        self.backend.seed(self._seed_fn())

        stop_ids = {tokenizer.unk_token_id, tokenizer.eos_token_id} - {None}
        output_tokens: list[int] = []
        finish_reason: FinishReason = "stop"

        tokens = iter(self.backend.sample(model, prompt_tokens, self.temperature))
        try:
            while True:
                if should_stop():
                    finish_reason = "cancelled"
                    logger.info("Generation cancelled after %d tokens", len(output_tokens))
                    break

                token_id = next(tokens, None)
                if token_id is None:
                    break

                # Measure decode time from the first token, so init covers
                # only prompt processing
                if not output_tokens:
                    init_time = self._clock()

                if token_id in stop_ids:
                    break

                output_tokens.append(token_id)

                if len(output_tokens) % self.display_every_n_tokens == 0:
                    self._state.update(output=tokenizer.decode(output_tokens))

                if len(output_tokens) >= self.max_tokens:
                    finish_reason = "length"
                    break
        finally:
            close = getattr(tokens, "close", None)
            if close is not None:
                close()

        decode_seconds = self._clock() - init_time
        tokens_per_second = len(output_tokens) / decode_seconds if decode_seconds > 0 else 0.0

        # The cadence may have skipped the last tokens; the final text is always exact
        final_text = tokenizer.decode(output_tokens)

        def finish(current: EvaluatorState) -> EvaluatorState:
            return replace(
                current,
                output=final_text,
                running=False,
                stat=f"{current.stat} Tokens/second: {tokens_per_second:.3f}",
            )

        self._state.modify(finish)

        logger.info(
            "Generated %d tokens in %.2fs (%.1f tok/s, %s)",
            len(output_tokens),
            decode_seconds,
            tokens_per_second,
            finish_reason,
        )
        return GenerationResult(
            text=final_text,
            tokens_generated=len(output_tokens),
            prompt_tokens=len(prompt_tokens),
            init_seconds=init_seconds,
            decode_seconds=decode_seconds,
            tokens_per_second=tokens_per_second,
            finish_reason=finish_reason,
        )

    def _fail(self, error: LLMEvalError) -> GenerationResult:
        message = f"Failed: {error}"
        self._state.update(running=False, output=message)
        return GenerationResult(
            text=message, finish_reason="error", error=str(error), exception=error
        )
