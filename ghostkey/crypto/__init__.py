"""
Envelope cryptography.

- envelope.py: EncryptionEnvelope layout and the AES-256-GCM codec
- escrow.py: where the symmetric key lives (inline or threshold shares)
- content_id.py: policy-bound content identifiers
"""
from ghostkey.crypto.content_id import generate_content_id, verify_content_id
from ghostkey.crypto.envelope import (
    DecryptedContent,
    EncryptionEnvelope,
    EnvelopeCodec,
    decrypt,
    encrypt,
)

__all__ = [
    "DecryptedContent",
    "EncryptionEnvelope",
    "EnvelopeCodec",
    "decrypt",
    "encrypt",
    "generate_content_id",
    "verify_content_id",
]
