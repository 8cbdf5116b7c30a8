"""Contract interfaces for LLMEval.

Implementations code against these protocols, not concrete classes.
"""

from contracts.backend import InferenceBackend, ProgressCallback, Tokenizer

__all__ = [
    "InferenceBackend",
    "ProgressCallback",
    "Tokenizer",
]
