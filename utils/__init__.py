"""Shared helpers: input validators and CLI output rendering."""
