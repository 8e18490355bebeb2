# ABOUTME: Long-term per (user, course) learning archives.
# ABOUTME: Re-exports the archive summarizer and registration time reconciliation.

from .summarizer import RegistrationTimes, reconcile_registration_times, summarize_archive

__all__ = ["RegistrationTimes", "reconcile_registration_times", "summarize_archive"]
