"""nexus: local-first knowledge base synchronised against a remote document store."""

__version__ = "0.4.0"
