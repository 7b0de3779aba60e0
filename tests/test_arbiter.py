from types import SimpleNamespace

import pytest

from credledger.arbiter import Principal, can_access, has_permission, require
from credledger.errors import AuthorizationError

ADMIN = Principal.with_role("0x" + "a" * 40, "admin")
ISSUER = Principal.with_role("0x" + "1" * 40, "issuer")
OWNER = Principal.with_role("0x" + "2" * 40, "student")
VIEWER = Principal.with_role("0x" + "3" * 40, "verifier")
STRANGER = Principal.with_role("0x" + "4" * 40, "student")


def make_document(viewers=()):
    return SimpleNamespace(
        owner_address=OWNER.address,
        issuer_address=ISSUER.address,
        viewer_addresses=list(viewers),
    )


@pytest.mark.parametrize("principal, permission, expected", [
    (ADMIN, "can_issue", True),
    (ADMIN, "can_transfer", True),
    (ADMIN, "anything", True),
    (OWNER, "can_issue", False),
    (ISSUER, "can_issue", True),
    (VIEWER, "can_verify", True),
    (VIEWER, "can_issue", False),
    (None, "can_verify", True),
    (None, "can_issue", False),
])
def test_role_permissions(principal, permission, expected):
    assert has_permission(principal, permission) is expected


def test_admin_may_do_everything():
    document = make_document()
    for action in ("view", "download", "transfer", "grant", "revoke", "deactivate", "audit"):
        assert can_access(ADMIN, document, action, target=OWNER.address)


def test_owner_and_issuer_rights():
    document = make_document(viewers=[VIEWER.address])
    for party in (OWNER, ISSUER):
        assert can_access(party, document, "view")
        assert can_access(party, document, "download")
        assert can_access(party, document, "transfer")
        assert can_access(party, document, "revoke", target=VIEWER.address)
        assert not can_access(party, document, "revoke", target=OWNER.address)
        assert not can_access(party, document, "revoke", target=ISSUER.address)


def test_explicit_viewer_may_read_but_not_manage():
    document = make_document(viewers=[VIEWER.address])
    assert can_access(VIEWER, document, "view")
    assert can_access(VIEWER, document, "download")
    assert not can_access(VIEWER, document, "transfer")
    assert not can_access(VIEWER, document, "grant")
    assert not can_access(VIEWER, document, "revoke", target=STRANGER.address)


def test_stranger_is_denied():
    document = make_document()
    assert not can_access(STRANGER, document, "view")
    assert not can_access(None, document, "view")


def test_access_isolation_between_documents():
    first = make_document(viewers=[STRANGER.address])
    second = make_document()
    assert can_access(STRANGER, first, "download")
    assert not can_access(STRANGER, second, "download")


def test_issue_and_verify_consult_role_only():
    assert can_access(ISSUER, None, "issue")
    assert not can_access(OWNER, None, "issue")
    assert not can_access(None, None, "issue")
    assert can_access(None, None, "verify")


def test_require_raises():
    with pytest.raises(AuthorizationError):
        require(STRANGER, make_document(), "download")
    require(OWNER, make_document(), "download")


def test_principal_address_is_lowercased():
    principal = Principal.with_role("0x" + "AB" * 20, "issuer")
    assert principal.address == "0x" + "ab" * 20
    assert principal.can_issue
    with pytest.raises(ValueError):
        Principal.with_role(principal.address, "dean")
