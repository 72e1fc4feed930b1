"""Approximate token accounting for providers that omit usage data."""

from typing import Optional


def estimate(text: Optional[str]) -> int:
    """Roughly four characters per token. Empty or missing text counts as zero."""
    if not text:
        return 0
    return len(text) // 4


def fill(result, query: Optional[str], response: Optional[str]) -> None:
    """
    Populate token fields on a QueryResult from the length heuristic.

    Only applies when the provider did not report authoritative counts
    (total_tokens == 0); upstream numbers are left untouched otherwise.
    """
    if result.total_tokens != 0:
        return

    input_tokens = estimate(query)
    output_tokens = estimate(response)
    total_tokens = input_tokens + output_tokens

    result.input_tokens = input_tokens
    result.output_tokens = output_tokens
    result.total_tokens = total_tokens
    result.num_tokens = total_tokens
