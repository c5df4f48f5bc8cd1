"""Product photo → video ad worker."""

__version__ = "0.1.0"

# Load the pipeline package first so presets/prompts resolve without an import cycle.
from . import pipeline  # noqa: E402,F401
