"""MLX inference backend.

Fetches weights from the HuggingFace Hub with progress reporting, loads the
model/tokenizer pair with mlx_lm, and exposes token sampling as a lazy,
unbounded iterator. Implements contracts.backend.InferenceBackend.

Usage:
    from models.loader import MLXBackend
    from models.registry import resolve_profile

    backend = MLXBackend()
    backend.set_working_set_ceiling(20 * 1024 * 1024)
    profile = resolve_profile("mlx-community/Qwen2.5-0.5B-Instruct-4bit")
    model, tokenizer = backend.load(profile, print)
    tokens = tokenizer.encode("hello")
    for token in backend.sample(model, tokens, temperature=0.5):
        ...

MLX and mlx_lm are imported on first use so the rest of the package (and the
test suite) can be imported on machines without Apple Silicon.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

from huggingface_hub import snapshot_download
from huggingface_hub.utils import GatedRepoError, HfHubHTTPError, RepositoryNotFoundError
from tqdm.auto import tqdm

from contracts.backend import ProgressCallback
from llmeval.errors import ModelLoadError, model_not_found, model_out_of_memory
from models.memory_config import (
    BYTES_PER_MB,
    active_memory_bytes,
    apply_cache_limit,
    available_memory_mb,
)
from models.registry import ModelProfile

logger = logging.getLogger(__name__)

# Files mlx_lm needs to build a model and tokenizer
WEIGHT_PATTERNS = ["*.json", "*.safetensors", "*.py", "tokenizer.model", "*.tiktoken", "*.txt"]

DEFAULT_MEMORY_BUFFER_MULTIPLIER = 1.3


def _progress_bar_class(on_progress: ProgressCallback) -> type[tqdm]:
    """Build a tqdm subclass that forwards completion fractions to on_progress.

    snapshot_download builds several bars from this class: one over the files
    of the repo, plus byte bars (unit "B") whose total grows as files are
    discovered. Only the file bar is forwarded, and reported fractions never
    decrease. Completed units are counted here since a disabled bar does not
    advance n.
    """
    reported = [0.0]

    class _ProgressBar(tqdm):  # type: ignore[misc]
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            kwargs.pop("name", None)
            super().__init__(*args, **kwargs)
            self._completed = 0
            self._forward = kwargs.get("unit", "it") != "B"

        def update(self, n: float | None = 1) -> bool | None:
            self._completed += n or 0
            if self._forward and self.total:
                fraction = min(1.0, self._completed / self.total)
                if fraction >= reported[0]:
                    reported[0] = fraction
                    on_progress(fraction)
            return super().update(n)

    return _ProgressBar


class MLXTokenizer:
    """Adapts an mlx_lm TokenizerWrapper to contracts.backend.Tokenizer."""

    def __init__(self, wrapped: Any) -> None:
        self._wrapped = wrapped

    @property
    def unk_token_id(self) -> int | None:
        return getattr(self._wrapped, "unk_token_id", None)

    @property
    def eos_token_id(self) -> int | None:
        return getattr(self._wrapped, "eos_token_id", None)

    def encode(self, text: str) -> list[int]:
        # Templates that already start with BOS must not get a second one
        bos_token = getattr(self._wrapped, "bos_token", None)
        add_special_tokens = bos_token is None or not text.startswith(bos_token)
        return list(self._wrapped.encode(text, add_special_tokens=add_special_tokens))

    def decode(self, tokens: Sequence[int]) -> str:
        return self._wrapped.decode(list(tokens))


class MLXBackend:
    """Inference backend running MLX models on Apple Silicon.

    IMPORTANT: _gpu_lock is a class-level lock shared by ALL instances. Loading
    and sampling both hold it, since concurrent Metal command encoding from
    two threads crashes the process.
    """

    _gpu_lock = threading.Lock()

    def __init__(
        self,
        memory_buffer_multiplier: float = DEFAULT_MEMORY_BUFFER_MULTIPLIER,
        cache_dir: str | Path | None = None,
    ) -> None:
        self.memory_buffer_multiplier = memory_buffer_multiplier
        self.cache_dir = cache_dir
        self.last_load_time_ms: float | None = None

    def fetch(self, profile: ModelProfile, on_progress: ProgressCallback) -> Path:
        """Download the model files (or reuse the local cache) and return their directory.

        Raises:
            ModelLoadError: If the repo does not exist, is gated, or the
                download fails.
        """
        local = Path(profile.id).expanduser()
        if local.is_dir():
            logger.debug("Using local model directory %s", local)
            on_progress(1.0)
            return local

        on_progress(0.0)
        try:
            path = snapshot_download(
                repo_id=profile.id,
                allow_patterns=WEIGHT_PATTERNS,
                cache_dir=self.cache_dir,
                tqdm_class=_progress_bar_class(on_progress),
            )
        except RepositoryNotFoundError as e:
            logger.error("Model not found on HuggingFace Hub: %s", profile.id)
            raise model_not_found(profile.id) from e
        except GatedRepoError as e:
            logger.error(
                "Access denied: '%s' requires authentication. Run `huggingface-cli login`.",
                profile.id,
            )
            raise ModelLoadError(
                f"Model requires authentication: {profile.id}",
                model_name=profile.id,
                cause=e,
            ) from e
        except (HfHubHTTPError, OSError) as e:
            logger.error("Failed to download %s: %s", profile.id, e)
            raise ModelLoadError(
                f"Failed to download model: {e}",
                model_name=profile.id,
                cause=e,
            ) from e

        on_progress(1.0)
        return Path(path)

    def _check_memory(self, profile: ModelProfile, model_path: Path) -> None:
        """Refuse to load when free memory is below the weights size plus buffer."""
        weights_bytes = sum(f.stat().st_size for f in model_path.glob("*.safetensors"))
        required_mb = int(weights_bytes / BYTES_PER_MB * self.memory_buffer_multiplier)
        available_mb = available_memory_mb()
        if available_mb < required_mb:
            logger.warning(
                "Insufficient memory for model load: %dMB available, %dMB required",
                available_mb,
                required_mb,
            )
            raise model_out_of_memory(
                profile.id, available_mb=available_mb, required_mb=required_mb
            )

    def _load_tokenizer_override(self, profile: ModelProfile, model_path: Path) -> Any:
        """Build the tokenizer from an explicit class and/or alternate repo."""
        import transformers
        from mlx_lm.tokenizer_utils import TokenizerWrapper

        source = profile.tokenizer_id or str(model_path)
        tokenizer_cls: Any = transformers.AutoTokenizer
        if profile.override_tokenizer:
            tokenizer_cls = getattr(transformers, profile.override_tokenizer, None)
            if tokenizer_cls is None:
                raise ModelLoadError(
                    f"Unknown tokenizer class: {profile.override_tokenizer}",
                    model_name=profile.id,
                )
        return TokenizerWrapper(tokenizer_cls.from_pretrained(source))

    def load(
        self, profile: ModelProfile, on_progress: ProgressCallback
    ) -> tuple[Any, MLXTokenizer]:
        """Fetch, then load the model and tokenizer for a profile.

        Raises:
            ModelLoadError: If fetching or loading fails for any reason.
        """
        model_path = self.fetch(profile, on_progress)
        self._check_memory(profile, model_path)

        from mlx_lm import load

        with MLXBackend._gpu_lock:
            try:
                logger.info("Loading model: %s (%s)", profile.display_name, model_path)
                start_time = time.perf_counter()

                model, tokenizer = load(str(model_path))[:2]
                if profile.tokenizer_id or profile.override_tokenizer:
                    tokenizer = self._load_tokenizer_override(profile, model_path)

                self.last_load_time_ms = (time.perf_counter() - start_time) * 1000
                logger.info("Model loaded in %.0fms", self.last_load_time_ms)
                return model, MLXTokenizer(tokenizer)

            except ModelLoadError:
                raise
            except FileNotFoundError as e:
                logger.error("Model files missing under %s", model_path)
                raise model_not_found(profile.id) from e
            except MemoryError as e:
                logger.error("Out of memory loading model. Free up memory or use a smaller model.")
                raise model_out_of_memory(profile.id) from e
            except Exception as e:
                logger.exception("Failed to load model")
                raise ModelLoadError(
                    f"Failed to load model: {e}",
                    model_name=profile.id,
                    cause=e,
                ) from e

    def sample(self, model: Any, prompt_tokens: Sequence[int], temperature: float) -> Iterator[int]:
        """Yield sampled token ids forever.

        Holds the GPU lock while iterating; closing the iterator releases it.
        """
        import mlx.core as mx
        from mlx_lm.generate import generate_step
        from mlx_lm.sample_utils import make_sampler

        sampler = make_sampler(temp=temperature)
        prompt = mx.array(list(prompt_tokens))

        with MLXBackend._gpu_lock:
            # max_tokens=-1 never matches the step counter, so the stream is unbounded
            for token, _ in generate_step(prompt, model, max_tokens=-1, sampler=sampler):
                yield int(token.item()) if hasattr(token, "item") else int(token)

    def seed(self, value: int) -> None:
        import mlx.core as mx

        mx.random.seed(value)

    def set_working_set_ceiling(self, limit_bytes: int) -> None:
        apply_cache_limit(limit_bytes)

    def resident_bytes(self) -> int:
        return active_memory_bytes()
