"""Shared utilities: async subprocess execution and logging setup."""
