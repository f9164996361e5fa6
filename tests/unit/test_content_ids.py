"""
Unit tests for policy-bound content identifiers.
"""
import re

from ghostkey.base.config import DEFAULT_PACKAGE_ID, SealPolicy
from ghostkey.crypto import generate_content_id, verify_content_id


def test_generated_ids_verify():
    for _ in range(50):
        assert verify_content_id(generate_content_id())


def test_format_has_policy_prefix_and_hex_nonce():
    content_id = generate_content_id()
    package_id, module, function, nonce = content_id.split("::")
    assert package_id == DEFAULT_PACKAGE_ID
    assert module == "marketplace"
    assert function == "seal_approve_access"
    assert re.fullmatch(r"[0-9a-f]{32}", nonce)


def test_ids_are_unique():
    assert len({generate_content_id() for _ in range(200)}) == 200


def test_rejects_garbage():
    assert not verify_content_id("not-a-valid-id")
    assert not verify_content_id("")
    assert not verify_content_id(None)
    assert not verify_content_id(b"bytes")


def test_rejects_other_policy():
    other = SealPolicy(package_id="0xabc", module_name="marketplace")
    foreign = generate_content_id(other)
    assert verify_content_id(foreign, other)
    assert not verify_content_id(foreign)
    assert not verify_content_id(generate_content_id(), other)
