"""StravAI: quota-aware, idempotent Strava to Gemini coaching sync."""

__version__ = "1.0.0"

__all__ = ["__version__"]
