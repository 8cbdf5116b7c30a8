"""Model profiles and the MLX inference backend.

Model Registry:
    from models import ModelProfile, get_registry

    registry = get_registry()
    profile = registry.resolve("mlx-community/Meta-Llama-3-8B-Instruct-4bit")
    prompt = profile.prepare("hello")

The MLX backend is imported from models.loader directly, so that importing
the registry does not pull in huggingface_hub or MLX.
"""

from models.registry import (
    BUILTIN_PROFILES,
    LLAMA3_INSTRUCT,
    MINICPM,
    BootstrapState,
    ModelProfile,
    ProfileRegistry,
    default_profile_id,
    get_registry,
    register_profiles,
    reset_registry,
    resolve_profile,
)

__all__ = [
    "BUILTIN_PROFILES",
    "LLAMA3_INSTRUCT",
    "MINICPM",
    "BootstrapState",
    "ModelProfile",
    "ProfileRegistry",
    "default_profile_id",
    "get_registry",
    "register_profiles",
    "reset_registry",
    "resolve_profile",
]
