"""Built-in prompt templates.

The template strings are matched against the exact framing the target model
family was tuned on. Delimiter tokens, spacing and newlines must stay
byte-for-byte identical; the tokenizer is sensitive to all of them.
"""

from __future__ import annotations

LLAMA3_SYSTEM_PROMPT = (
    "You are a friend of the user. Pretend to be a humand and use "
    "the entire conversation provided to you along with the last reply"
    "and respond to it in the context of the "
    "conversation "
)


def llama3_chat_template(prompt: str) -> str:
    """Wrap a prompt in a Llama 3 system/user/assistant turn."""
    return (
        "<|begin_of_text|><|start_header_id|>system<|end_header_id|>\n"
        f"{LLAMA3_SYSTEM_PROMPT}<|eot_id|><|start_header_id|>user<|end_header_id|>\n"
        f"{prompt}<|eot_id|><|start_header_id|>assistant<|end_header_id|>"
    )


def identity_template(prompt: str) -> str:
    return prompt
