"""
Anthropic client used by the default activity summarizer.
"""

import os
from anthropic import AsyncAnthropic


def get_anthropic_client() -> AsyncAnthropic:
    """Get Anthropic client with API key from environment."""
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise ValueError("ANTHROPIC_API_KEY must be set")
    return AsyncAnthropic(api_key=api_key)
