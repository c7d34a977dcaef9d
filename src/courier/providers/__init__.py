"""Provider adapters and appliers for Google mail and calendar."""

__all__ = ["gmail", "google_calendar"]
