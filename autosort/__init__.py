"""autosort - directory-watching file organizer."""

__version__ = "0.1.0"
