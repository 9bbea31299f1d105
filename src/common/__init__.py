"""Shared infrastructure: errors, logging, HTTP, retry, integrity, archives, filesystem."""
