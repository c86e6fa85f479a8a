"""
Secure link token protocol.

Covers:
  - only the SHA-256 hash is stored, never the raw token
  - links pin the commitment version at issuance; resend inserts a new row
  - a link burns exactly once (second use → LINK_INVALID), also under
    concurrent attempts
  - consuming one link retires its resent copies for the same version
  - expired links and wrong-purpose links are rejected
  - a stale-version link is burned and still reports LINK_OLD_VERSION
  - preview never burns
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.core.exceptions import LinkInvalidError, LinkOldVersionError
from app.core.identity import AuthContext
from app.models import db
from app.models.change_request import ChangeRequest
from app.models.commitment import (
    STATUS_AWAITING_CLIENT_APPROVAL,
    STATUS_CLOSED,
    STATUS_IN_PROGRESS,
    Commitment,
)
from app.models.secure_link import PURPOSE_ACCEPTANCE, PURPOSE_APPROVAL, SecureLink
from app.services import commitment_service, public_link_service
from app.services.secure_link_service import (
    burn_link,
    find_active_link,
    generate_raw_token,
    hash_token,
)


def _token(url: str) -> str:
    return url.rsplit("/", 1)[1]


def _links(commitment_id):
    return list(db.session.execute(
        select(SecureLink).where(SecureLink.commitment_id == commitment_id).order_by(SecureLink.id)
    ).scalars())


class TestTokenPrimitives:
    def test_raw_token_is_64_hex_chars(self):
        raw = generate_raw_token()
        assert len(raw) == 64
        int(raw, 16)

    def test_raw_tokens_are_unique(self):
        assert generate_raw_token() != generate_raw_token()

    def test_hash_is_sha256_hex(self):
        digest = hash_token("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestIssue:
    def test_issue_stores_hash_and_pins_version(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        url = commitment_service.send_approval_link(founder_ctx, commitment.id)

        raw = _token(url)
        assert url.startswith("http://localhost:5173/approve/")
        links = _links(commitment.id)
        assert len(links) == 1
        link = links[0]
        assert link.token_hash == hash_token(raw)
        assert link.token_hash != raw
        assert link.purpose == PURPOSE_APPROVAL
        assert link.commitment_version == 1
        assert link.used_at is None
        assert "token_hash" not in link.to_dict()

    def test_resend_inserts_new_record(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        first = commitment_service.send_approval_link(founder_ctx, commitment.id)
        second = commitment_service.send_approval_link(founder_ctx, commitment.id, resend=True)

        assert first != second
        assert len(_links(commitment.id)) == 2


class TestBurn:
    def test_burn_once_then_invalid(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        raw = _token(commitment_service.send_approval_link(founder_ctx, commitment.id))

        link = burn_link(raw, PURPOSE_APPROVAL)
        assert link.used_at is not None

        with pytest.raises(LinkInvalidError):
            burn_link(raw, PURPOSE_APPROVAL)

    def test_double_consume_second_is_link_invalid(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        raw = _token(commitment_service.send_approval_link(founder_ctx, commitment.id))

        result = public_link_service.consume_approval_token(raw, "approve")
        assert result["status"] == STATUS_IN_PROGRESS

        with pytest.raises(LinkInvalidError):
            public_link_service.consume_approval_token(raw, "approve")

    def test_concurrent_burns_have_exactly_one_winner(self, file_app, make_org, make_user, make_client):
        with file_app.app_context():
            org = make_org()
            founder = make_user(org)
            customer = make_client(org)
            ctx = AuthContext(user_id=founder.id, org_id=org.id, role=founder.role)
            commitment = commitment_service.create_commitment(ctx, {
                "client_id": customer.id,
                "title": "Landing page",
                "scope_description": "One page",
                "amount": 1000,
            })
            commitment_id = commitment.id
            raw = _token(commitment_service.send_approval_link(ctx, commitment_id))

        attempts = 8
        barrier = threading.Barrier(attempts)
        outcomes = []
        lock = threading.Lock()

        def _attempt():
            barrier.wait(timeout=10)
            with file_app.app_context():
                try:
                    burn_link(raw, PURPOSE_APPROVAL)
                    outcome = "ok"
                except LinkInvalidError:
                    outcome = "invalid"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=_attempt) for _ in range(attempts)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == ["invalid"] * (attempts - 1) + ["ok"]
        with file_app.app_context():
            assert _links(commitment_id)[0].used_at is not None

    def test_unknown_token_is_invalid(self):
        with pytest.raises(LinkInvalidError):
            burn_link("f" * 64, PURPOSE_APPROVAL)

    def test_wrong_purpose_is_invalid_and_not_burned(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        raw = _token(commitment_service.send_approval_link(founder_ctx, commitment.id))

        with pytest.raises(LinkInvalidError):
            burn_link(raw, PURPOSE_ACCEPTANCE)
        assert _links(commitment.id)[0].used_at is None

    def test_expired_link_is_invalid(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        raw = _token(commitment_service.send_approval_link(founder_ctx, commitment.id))
        link = _links(commitment.id)[0]
        link.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        db.session.commit()

        with pytest.raises(LinkInvalidError):
            public_link_service.consume_approval_token(raw, "approve")
        db.session.expire_all()
        assert _links(commitment.id)[0].used_at is None

    def test_stale_version_burns_and_reports_old_version(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        raw = _token(commitment_service.send_approval_link(founder_ctx, commitment.id))
        commitment.version = 2
        db.session.commit()

        with pytest.raises(LinkOldVersionError) as exc:
            public_link_service.consume_approval_token(raw, "approve")
        assert exc.value.details == {"link_version": 1, "current_version": 2}

        db.session.expire_all()
        assert _links(commitment.id)[0].used_at is not None
        assert db.session.get(type(commitment), commitment.id).status == STATUS_AWAITING_CLIENT_APPROVAL

        # Burned for good: the retry is LINK_INVALID, not LINK_OLD_VERSION
        with pytest.raises(LinkInvalidError):
            public_link_service.consume_approval_token(raw, "approve")

    def test_unknown_action_burns_nothing(self, founder_ctx, new_commitment):
        from app.core.exceptions import ValidationError

        commitment = new_commitment()
        raw = _token(commitment_service.send_approval_link(founder_ctx, commitment.id))

        with pytest.raises(ValidationError):
            public_link_service.consume_approval_token(raw, "maybe")
        assert _links(commitment.id)[0].used_at is None


class TestResentLinks:
    def _send_twice(self, ctx, commitment):
        first = commitment_service.send_approval_link(ctx, commitment.id)
        second = commitment_service.send_approval_link(ctx, commitment.id, resend=True)
        return _token(first), _token(second)

    def test_consuming_one_copy_retires_the_other(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        first, second = self._send_twice(founder_ctx, commitment)

        public_link_service.consume_approval_token(first, "approve")

        db.session.expire_all()
        assert all(link.used_at is not None for link in _links(commitment.id))
        with pytest.raises(LinkInvalidError):
            burn_link(second, PURPOSE_APPROVAL)

    def test_leftover_copy_cannot_reopen_closed_commitment(self, founder_ctx, new_commitment):
        commitment = new_commitment(deliverables=[])
        first, second = self._send_twice(founder_ctx, commitment)
        public_link_service.consume_approval_token(first, "approve")
        commitment_service.mark_delivered(founder_ctx, commitment.id)
        acceptance = commitment_service.send_acceptance_link(founder_ctx, commitment.id)
        public_link_service.consume_acceptance_token(_token(acceptance))

        db.session.expire_all()
        closed = db.session.get(Commitment, commitment.id)
        approved_at = closed.approved_at
        assert closed.status == STATUS_CLOSED

        for action in ("approve", "request_change"):
            with pytest.raises(LinkInvalidError):
                public_link_service.consume_approval_token(second, action, comment="Reopen")

        db.session.expire_all()
        closed = db.session.get(Commitment, commitment.id)
        assert closed.status == STATUS_CLOSED
        assert closed.approved_at == approved_at
        assert closed.accepted_at is not None
        assert db.session.execute(select(ChangeRequest)).first() is None

    def test_retire_is_scoped_to_purpose_and_version(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        stale = _token(commitment_service.send_approval_link(founder_ctx, commitment.id))
        commitment.version = 2
        db.session.commit()
        current = _token(commitment_service.send_approval_link(founder_ctx, commitment.id, resend=True))

        with pytest.raises(LinkOldVersionError):
            public_link_service.consume_approval_token(stale, "approve")

        # The v1 burn leaves the v2 link alone
        assert public_link_service.consume_approval_token(current, "approve")["status"] == STATUS_IN_PROGRESS


class TestPreview:
    def test_preview_does_not_burn(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        raw = _token(commitment_service.send_approval_link(founder_ctx, commitment.id))

        preview = public_link_service.preview_link(raw, PURPOSE_APPROVAL)
        assert preview["version_ok"] is True
        assert preview["link"]["used"] is False
        assert preview["commitment"]["id"] == commitment.id
        assert preview["client"] == {"name": "Priya Sharma", "email": "priya@acme.test"}
        assert _links(commitment.id)[0].used_at is None

    def test_preview_flags_stale_version(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        raw = _token(commitment_service.send_approval_link(founder_ctx, commitment.id))
        commitment.version = 3
        db.session.commit()

        assert public_link_service.preview_link(raw, PURPOSE_APPROVAL)["version_ok"] is False

    def test_preview_unknown_token(self):
        with pytest.raises(LinkInvalidError):
            find_active_link("0" * 64, PURPOSE_APPROVAL)

    def test_preview_rejects_unknown_purpose(self):
        with pytest.raises(ValueError):
            public_link_service.preview_link("x", "DOWNLOAD")
