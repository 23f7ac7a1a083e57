"""Local-first Google Drive synchronisation core for the consultant CRM."""

__version__ = "2.0.0"
