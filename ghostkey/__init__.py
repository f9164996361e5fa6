# ============================================================================
# ghostkey/__init__.py
# Package Marker for the GhostKey envelope core
# ============================================================================
#
# Encrypt once, gate access by an expiring on-chain credential, decrypt on
# demand. See ghostkey.pipeline for the end-to-end upload and decrypt flows.
#
__version__ = "0.3.0"
