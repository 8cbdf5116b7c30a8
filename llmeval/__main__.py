"""Entry point for python -m llmeval execution.

    python -m llmeval generate "prompt"
    python -m llmeval chat
    python -m llmeval models
"""

from llmeval.cli import run

if __name__ == "__main__":
    run()
