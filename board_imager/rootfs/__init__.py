"""Adapters for the root filesystem tools and the edits made to the populated tree."""
