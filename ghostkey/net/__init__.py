"""Networking helpers shared by the blob store client and chain queries."""
