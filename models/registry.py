"""Model profile registry for LLMEval.

Maps model identifiers to profiles describing how to load and prompt them.
The registry fills itself with the built-in profiles on first access and
never fails a lookup: unknown identifiers get a synthesized default profile,
so any HuggingFace repo path can be used as a model id.

Usage:
    from models.registry import ModelProfile, get_registry

    registry = get_registry()
    profile = registry.resolve("mlx-community/Meta-Llama-3-8B-Instruct-4bit")
    text = profile.prepare("hello")

    # Add or replace profiles
    registry.register([ModelProfile(id="my-org/my-model-4bit")])
"""

from __future__ import annotations

import logging
import sys
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from models.prompt_templates import identity_template, llama3_chat_template

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelProfile:
    """Identity and prompting rules for one model.

    Attributes:
        id: Unique identifier, normally a HuggingFace repo path.
        tokenizer_id: Alternate repo to fetch the tokenizer from (None = same as id).
        override_tokenizer: Tokenizer class name to use when it cannot be
            inferred from the model files.
        prompt_template: Wraps the raw user prompt in model-specific framing.
    """

    id: str
    tokenizer_id: str | None = None
    override_tokenizer: str | None = None
    prompt_template: Callable[[str], str] = field(default=identity_template, compare=False)

    def prepare(self, prompt: str) -> str:
        """Apply the prompt template to a raw prompt."""
        return self.prompt_template(prompt)

    @property
    def display_name(self) -> str:
        """Return the last path component of the id."""
        return self.id.split("/")[-1]


LLAMA3_INSTRUCT = ModelProfile(
    id="mlx-community/Meta-Llama-3-8B-Instruct-4bit",
    override_tokenizer="PreTrainedTokenizerFast",
    prompt_template=llama3_chat_template,
)

MINICPM = ModelProfile(
    id="mlx-community/MiniCPM-2B-sft-4bit-llama-format-mlx",
    override_tokenizer="LlamaTokenizerFast",
)

BUILTIN_PROFILES: tuple[ModelProfile, ...] = (LLAMA3_INSTRUCT, MINICPM)


def default_profile_id() -> str:
    """Return the profile used when no model is configured.

    The 8B model only fits comfortably on a Mac; everything else gets the
    2B model.
    """
    if sys.platform == "darwin":
        return LLAMA3_INSTRUCT.id
    return MINICPM.id


class BootstrapState(str, Enum):
    """Progress of the one-shot registration of built-in profiles."""

    IDLE = "idle"
    BOOTSTRAPPING = "bootstrapping"
    BOOTSTRAPPED = "bootstrapped"


class ProfileRegistry:
    """Catalogue of model profiles with lazy, run-once bootstrap.

    Thread-safe. The lock is re-entrant because bootstrap() registers the
    built-ins through register(), which itself triggers bootstrap(); that
    nested call observes BOOTSTRAPPING and returns immediately. Concurrent
    first callers block on the lock until the first one has finished.
    """

    def __init__(self, builtins: Iterable[ModelProfile] = BUILTIN_PROFILES) -> None:
        self._builtins = tuple(builtins)
        self._profiles: dict[str, ModelProfile] = {}
        self._state = BootstrapState.IDLE
        self._lock = threading.RLock()

    @property
    def state(self) -> BootstrapState:
        return self._state

    def bootstrap(self) -> None:
        """Register the built-in profiles exactly once."""
        if self._state is BootstrapState.BOOTSTRAPPED:
            return
        with self._lock:
            if self._state is not BootstrapState.IDLE:
                return
            self._state = BootstrapState.BOOTSTRAPPING
            self.register(self._builtins)
            self._state = BootstrapState.BOOTSTRAPPED
            logger.debug("Registered %d built-in model profiles", len(self._builtins))

    def register(self, profiles: Iterable[ModelProfile]) -> None:
        """Add or replace profiles, keyed by id. Last writer wins."""
        self.bootstrap()
        with self._lock:
            for profile in profiles:
                if profile.id in self._profiles:
                    logger.debug("Replacing model profile '%s'", profile.id)
                self._profiles[profile.id] = profile

    def resolve(self, model_id: str) -> ModelProfile:
        """Return the profile for model_id, or a default one if unregistered.

        Args:
            model_id: The model identifier (e.g., "mlx-community/Qwen2.5-1.5B-Instruct-4bit").

        Returns:
            The registered ModelProfile, or ModelProfile(id=model_id) with an
            identity prompt template and no tokenizer overrides.
        """
        self.bootstrap()
        with self._lock:
            profile = self._profiles.get(model_id)
        if profile is None:
            logger.debug("No profile registered for '%s', using defaults", model_id)
            return ModelProfile(id=model_id)
        return profile

    def ids(self) -> list[str]:
        """Return registered profile ids in registration order."""
        self.bootstrap()
        with self._lock:
            return list(self._profiles)

    def __contains__(self, model_id: object) -> bool:
        self.bootstrap()
        with self._lock:
            return model_id in self._profiles

    def __len__(self) -> int:
        self.bootstrap()
        with self._lock:
            return len(self._profiles)


# Process-wide registry with thread-safe initialization
_registry: ProfileRegistry | None = None
_registry_lock = threading.Lock()


def get_registry() -> ProfileRegistry:
    """Get or create the shared ProfileRegistry.

    Thread-safe using double-check locking pattern.
    """
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = ProfileRegistry()
    return _registry


def reset_registry() -> None:
    """Drop the shared registry so the next access bootstraps a fresh one."""
    global _registry
    with _registry_lock:
        _registry = None


def register_profiles(profiles: Iterable[ModelProfile]) -> None:
    """Register profiles with the shared registry."""
    get_registry().register(profiles)


def resolve_profile(model_id: str) -> ModelProfile:
    """Resolve a profile from the shared registry."""
    return get_registry().resolve(model_id)
