"""LLMEval - streaming text generation against local MLX language models.

Loads a model once, streams sampled tokens into an observable output buffer,
and reports load progress and throughput.

Usage:
    from llmeval import LLMEvaluator

    evaluator = LLMEvaluator()
    result = evaluator.generate("Tell me a story")
    print(result.text, result.tokens_per_second)
"""

from llmeval.evaluator import GenerationResult, LLMEvaluator, Loaded, LoadState, Unloaded
from llmeval.state import EvaluatorState, ImmediateDispatcher, ObservableState, SerialDispatcher

__version__ = "0.1.0"

__all__ = [
    "EvaluatorState",
    "GenerationResult",
    "ImmediateDispatcher",
    "LLMEvaluator",
    "LoadState",
    "Loaded",
    "ObservableState",
    "SerialDispatcher",
    "Unloaded",
    "__version__",
]
