"""
Commitment lifecycle state machine (service layer).

Covers:
  - create: version 1, root = self, client snapshot, COMMITMENT_CREATED
  - send approval → client approves (AWAITING → IN_PROGRESS)
  - mark delivered guards and the acceptance / auto-accept branches
  - acceptance link → client accepts → CLOSED
  - locked-field guards; a failed guard writes nothing
  - plan gate on assignment and on acceptance proof, manager scoping,
    monetary projection
  - non-transactional retry on NotSupportedError
"""

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import NotSupportedError

from app.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    PlanForbiddenError,
    ValidationError,
)
from app.models import db
from app.models.audit import ApprovalEvent
from app.models.auth import PLAN_FREELANCER, ROLE_MANAGER, ROLE_SUPER_ADMIN
from app.models.commitment import (
    STATUS_AWAITING_CLIENT_APPROVAL,
    STATUS_CLOSED,
    STATUS_DELIVERED,
    STATUS_DRAFT,
    STATUS_IN_PROGRESS,
    STATUS_INTERNAL_REVIEW,
    Commitment,
)
from app.models.notification import EmailLog
from app.models.secure_link import PURPOSE_ACCEPTANCE, PURPOSE_APPROVAL, SecureLink
from app.services import commitment_service, public_link_service
from app.services.commitment_service import sanitize_commitment_for_role


def _token(url: str) -> str:
    return url.rsplit("/", 1)[1]


def _event_types(commitment_id):
    return [
        e.event_type
        for e in db.session.execute(
            select(ApprovalEvent)
            .where(ApprovalEvent.commitment_id == commitment_id)
            .order_by(ApprovalEvent.id)
        ).scalars()
    ]


def _event_count(commitment_id):
    return db.session.execute(
        select(func.count(ApprovalEvent.id)).where(ApprovalEvent.commitment_id == commitment_id)
    ).scalar_one()


def _approve(ctx, commitment):
    url = commitment_service.send_approval_link(ctx, commitment.id)
    public_link_service.consume_approval_token(_token(url), "approve")
    db.session.expire_all()
    return db.session.get(Commitment, commitment.id)


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_create_defaults(self, founder, customer, new_commitment):
        commitment = new_commitment()

        assert commitment.version == 1
        assert commitment.status == STATUS_DRAFT
        assert commitment.root_commitment_id == commitment.id
        assert commitment.previous_commitment_id is None
        assert commitment.created_by_user_id == founder.id
        assert commitment.assigned_to_user_id == founder.id
        assert commitment.client_snapshot == {
            "name": "Priya Sharma",
            "email": "priya@acme.test",
            "company_name": "Acme Pvt Ltd",
        }
        assert commitment.payment_terms[0]["status"] == "PENDING"
        assert commitment.deliverables[0]["status"] == "NOT_STARTED"
        assert _event_types(commitment.id) == ["COMMITMENT_CREATED"]

    def test_create_internal_review(self, new_commitment):
        assert new_commitment(status=STATUS_INTERNAL_REVIEW).status == STATUS_INTERNAL_REVIEW

    def test_create_rejects_other_status(self, new_commitment):
        with pytest.raises(ValidationError):
            new_commitment(status=STATUS_IN_PROGRESS)

    def test_create_requires_title_and_scope(self, new_commitment):
        with pytest.raises(ValidationError) as exc:
            new_commitment(title="  ", scope_description="")
        assert set(exc.value.details) == {"title", "scope_description"}

    def test_create_rejects_negative_amount(self, new_commitment):
        with pytest.raises(ValidationError):
            new_commitment(amount=-1)

    def test_create_unknown_client(self, new_commitment):
        with pytest.raises(NotFoundError):
            new_commitment(client_id=99999)

    def test_create_client_of_other_org(self, new_commitment, make_org, make_client):
        other = make_client(make_org())
        with pytest.raises(NotFoundError):
            new_commitment(client_id=other.id)

    def test_approval_rules_fall_back_to_org_defaults(self, org, new_commitment):
        org.approval_defaults = {"acceptance_required": False}
        db.session.commit()

        commitment = new_commitment()
        assert commitment.rules.acceptance_required is False
        assert commitment.rules.re_approval_on_changes is True

    def test_create_and_send_approval(self, founder_ctx, customer):
        commitment = commitment_service.create_commitment(
            founder_ctx,
            {"client_id": customer.id, "title": "Logo", "scope_description": "Three concepts"},
            send_approval=True,
        )
        assert commitment.status == STATUS_AWAITING_CLIENT_APPROVAL
        assert _event_types(commitment.id) == ["COMMITMENT_CREATED", "APPROVAL_LINK_SENT"]

    def test_retries_step_by_step_when_transactions_unsupported(self, monkeypatch, new_commitment):
        original = commitment_service.create_commitment_core
        calls = []

        def flaky(*args, **kwargs):
            calls.append(kwargs["step_commit"])
            if not kwargs["step_commit"]:
                raise NotSupportedError("BEGIN", {}, Exception("transactions unsupported"))
            return original(*args, **kwargs)

        monkeypatch.setattr(commitment_service, "create_commitment_core", flaky)

        commitment = new_commitment()
        assert calls == [False, True]
        assert commitment.root_commitment_id == commitment.id
        assert _event_types(commitment.id) == ["COMMITMENT_CREATED"]
        assert db.session.execute(select(func.count(Commitment.id))).scalar_one() == 1


# ═════════════════════════════════════════════════════════════════════════
# APPROVAL
# ═════════════════════════════════════════════════════════════════════════


class TestApproval:
    def test_send_then_approve(self, founder_ctx, new_commitment):
        commitment = new_commitment(amount=50000)

        url = commitment_service.send_approval_link(founder_ctx, commitment.id)
        assert commitment.status == STATUS_AWAITING_CLIENT_APPROVAL
        assert commitment.approval_sent_at is not None
        links = db.session.execute(
            select(SecureLink).where(SecureLink.commitment_id == commitment.id)
        ).scalars().all()
        assert len(links) == 1
        assert links[0].purpose == PURPOSE_APPROVAL
        assert links[0].used_at is None

        result = public_link_service.consume_approval_token(
            _token(url), "approve", meta={"ip": "10.0.0.1", "user_agent": "pytest"},
        )
        assert result == {"status": STATUS_IN_PROGRESS}

        db.session.expire_all()
        commitment = db.session.get(Commitment, commitment.id)
        assert commitment.status == STATUS_IN_PROGRESS
        assert commitment.approved_at is not None
        assert db.session.get(SecureLink, links[0].id).used_at is not None

        events = db.session.execute(
            select(ApprovalEvent).where(ApprovalEvent.commitment_id == commitment.id).order_by(ApprovalEvent.id)
        ).scalars().all()
        assert [e.event_type for e in events] == ["COMMITMENT_CREATED", "APPROVAL_LINK_SENT", "CLIENT_APPROVED"]
        approved = events[-1]
        assert approved.actor_type == "CLIENT"
        assert approved.actor_user_id is None
        assert approved.actor_email == "priya@acme.test"
        assert approved.meta == {"ip": "10.0.0.1", "user_agent": "pytest"}

    def test_approval_email_logged(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        commitment_service.send_approval_link(founder_ctx, commitment.id)

        log = db.session.execute(select(EmailLog)).scalar_one()
        assert log.recipient_email == "priya@acme.test"
        assert log.template_name == "approval_request"
        assert log.status == "sent"
        assert log.commitment_id == commitment.id

    def test_email_failure_does_not_undo_transition(self, monkeypatch, founder_ctx, new_commitment):
        from app.services import email_service

        def boom(**kwargs):
            raise RuntimeError("smtp down")

        monkeypatch.setattr(email_service.EmailService, "send_from_template", boom)
        commitment = new_commitment()
        url = commitment_service.send_approval_link(founder_ctx, commitment.id)

        assert url
        db.session.expire_all()
        assert db.session.get(Commitment, commitment.id).status == STATUS_AWAITING_CLIENT_APPROVAL

    def test_send_from_in_progress_is_invalid(self, founder_ctx, new_commitment):
        commitment = _approve(founder_ctx, new_commitment())
        with pytest.raises(InvalidStateError):
            commitment_service.send_approval_link(founder_ctx, commitment.id)

    def test_resend_only_widens_to_awaiting(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        commitment_service.send_approval_link(founder_ctx, commitment.id)

        with pytest.raises(InvalidStateError):
            commitment_service.send_approval_link(founder_ctx, commitment.id)
        commitment_service.send_approval_link(founder_ctx, commitment.id, resend=True)
        assert _event_types(commitment.id)[-1] == "APPROVAL_LINK_RESENT"

    def test_send_without_any_client_email(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        commitment.client_id = None
        commitment.client_email_snapshot = None
        db.session.commit()

        with pytest.raises(NotFoundError):
            commitment_service.send_approval_link(founder_ctx, commitment.id)


# ═════════════════════════════════════════════════════════════════════════
# DELIVERY & ACCEPTANCE
# ═════════════════════════════════════════════════════════════════════════


class TestDelivery:
    def test_incomplete_deliverables_block_delivery(self, founder_ctx, new_commitment):
        commitment = _approve(founder_ctx, new_commitment(
            deliverables=[{"text": "Homepage", "status": "IN_PROGRESS"}],
        ))
        before = _event_count(commitment.id)

        with pytest.raises(InvalidStateError):
            commitment_service.mark_delivered(founder_ctx, commitment.id)
        assert _event_count(commitment.id) == before

        commitment_service.update_commitment(
            founder_ctx, commitment.id, {"deliverables": [{"text": "Homepage", "status": "DELIVERED"}]},
        )
        delivered = commitment_service.mark_delivered(founder_ctx, commitment.id)
        assert delivered.status == STATUS_DELIVERED
        assert delivered.delivered_at is not None
        assert delivered.accepted_at is None
        assert _event_types(commitment.id)[-1] == "MARKED_DELIVERED"

    def test_auto_accept_when_acceptance_not_required(self, founder_ctx, new_commitment):
        commitment = _approve(founder_ctx, new_commitment(
            deliverables=[{"text": "Homepage", "status": "ACCEPTED"}],
            approval_rules={"acceptance_required": False},
        ))

        closed = commitment_service.mark_delivered(founder_ctx, commitment.id)
        assert closed.status == STATUS_CLOSED
        assert closed.delivered_at is not None
        assert closed.accepted_at is not None
        assert _event_types(commitment.id)[-1] == "MARKED_DELIVERED_AUTO_ACCEPTED"

    def test_no_deliverables_counts_as_complete(self, founder_ctx, new_commitment):
        commitment = _approve(founder_ctx, new_commitment(deliverables=[]))
        assert commitment_service.mark_delivered(founder_ctx, commitment.id).status == STATUS_DELIVERED

    def test_deliver_requires_in_progress(self, founder_ctx, new_commitment):
        commitment = new_commitment(deliverables=[])
        with pytest.raises(InvalidStateError):
            commitment_service.mark_delivered(founder_ctx, commitment.id)

    def test_acceptance_flow_closes(self, founder_ctx, new_commitment):
        commitment = _approve(founder_ctx, new_commitment(deliverables=[]))
        commitment_service.mark_delivered(founder_ctx, commitment.id)

        url = commitment_service.send_acceptance_link(founder_ctx, commitment.id)
        assert "/accept/" in url
        result = public_link_service.consume_acceptance_token(_token(url), comment="Looks great")
        assert result == {"status": STATUS_CLOSED}

        db.session.expire_all()
        commitment = db.session.get(Commitment, commitment.id)
        assert commitment.accepted_at is not None
        assert _event_types(commitment.id)[-2:] == ["ACCEPTANCE_LINK_SENT", "CLIENT_ACCEPTED"]

    def test_acceptance_link_requires_delivery(self, founder_ctx, new_commitment):
        commitment = _approve(founder_ctx, new_commitment())
        with pytest.raises(InvalidStateError):
            commitment_service.send_acceptance_link(founder_ctx, commitment.id)

    def test_acceptance_link_when_not_required(self, founder_ctx, new_commitment):
        commitment = new_commitment(approval_rules={"acceptance_required": False})
        with pytest.raises(InvalidStateError):
            commitment_service.send_acceptance_link(founder_ctx, commitment.id)

    def test_acceptance_link_is_plan_gated(self, monkeypatch, org, founder_ctx, new_commitment):
        from app.services import plan_service

        commitment = _approve(founder_ctx, new_commitment(deliverables=[]))
        commitment_service.mark_delivered(founder_ctx, commitment.id)
        before = _event_count(commitment.id)
        monkeypatch.setitem(
            plan_service.PLAN_RULES, org.plan, frozenset({plan_service.FEATURE_ASSIGN_COMMITMENT}),
        )

        with pytest.raises(PlanForbiddenError) as exc:
            commitment_service.send_acceptance_link(founder_ctx, commitment.id)
        assert exc.value.details == {"feature": "ACCEPTANCE_PROOF"}
        assert _event_count(commitment.id) == before
        assert db.session.execute(
            select(SecureLink).where(SecureLink.purpose == PURPOSE_ACCEPTANCE)
        ).first() is None

    def test_acceptance_link_allowed_on_every_plan(self):
        from app.services.plan_service import FEATURE_ACCEPTANCE_PROOF, PLAN_RULES

        assert all(FEATURE_ACCEPTANCE_PROOF in features for features in PLAN_RULES.values())


# ═════════════════════════════════════════════════════════════════════════
# LOCKS
# ═════════════════════════════════════════════════════════════════════════


class TestLocks:
    def test_in_progress_locks_scope(self, founder_ctx, new_commitment):
        commitment = _approve(founder_ctx, new_commitment())
        with pytest.raises(InvalidStateError):
            commitment_service.update_commitment(founder_ctx, commitment.id, {"scope_description": "x"})

    def test_awaiting_locks_scope_for_original_versions(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        commitment_service.send_approval_link(founder_ctx, commitment.id)
        with pytest.raises(InvalidStateError):
            commitment_service.update_commitment(founder_ctx, commitment.id, {"amount": 1})

    def test_closed_amount_change_writes_nothing(self, founder_ctx, new_commitment):
        commitment = _approve(founder_ctx, new_commitment(
            deliverables=[], approval_rules={"acceptance_required": False},
        ))
        commitment_service.mark_delivered(founder_ctx, commitment.id)
        before = _event_count(commitment.id)

        with pytest.raises(InvalidStateError):
            commitment_service.update_commitment(founder_ctx, commitment.id, {"amount": 99})
        db.session.rollback()

        assert _event_count(commitment.id) == before
        assert db.session.get(Commitment, commitment.id).amount == 50000

    def test_delivered_locks_deliverables(self, founder_ctx, new_commitment):
        commitment = _approve(founder_ctx, new_commitment(deliverables=[]))
        commitment_service.mark_delivered(founder_ctx, commitment.id)
        with pytest.raises(InvalidStateError):
            commitment_service.update_commitment(
                founder_ctx, commitment.id, {"deliverables": [{"text": "Extra"}]},
            )

    def test_draft_edit_is_plain_update(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        updated = commitment_service.update_commitment(
            founder_ctx, commitment.id, {"scope_description": "Six pages", "ignored": 1},
        )
        assert updated.version == 1
        assert updated.scope_description == "Six pages"
        event = db.session.execute(
            select(ApprovalEvent).where(ApprovalEvent.commitment_id == commitment.id)
            .order_by(ApprovalEvent.id.desc())
        ).scalars().first()
        assert event.event_type == "COMMITMENT_UPDATED"
        assert event.meta == {"fields": ["scope_description"]}

    def test_empty_patch_writes_no_event(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        commitment_service.update_commitment(founder_ctx, commitment.id, {"amount": "lots"})
        assert _event_types(commitment.id) == ["COMMITMENT_CREATED"]


# ═════════════════════════════════════════════════════════════════════════
# PLAN GATE, ROLES, READS
# ═════════════════════════════════════════════════════════════════════════


class TestAccessControl:
    def test_freelancer_cannot_assign(self, make_org, make_user, make_client, as_ctx):
        org = make_org(plan=PLAN_FREELANCER)
        founder = make_user(org)
        teammate = make_user(org)
        customer = make_client(org)
        ctx = as_ctx(founder)
        data = {"client_id": customer.id, "title": "T", "scope_description": "S"}

        with pytest.raises(PlanForbiddenError) as exc:
            commitment_service.create_commitment(ctx, data, assigned_to_user_id=teammate.id)
        assert exc.value.details == {"feature": "ASSIGN_COMMITMENT"}

        commitment = commitment_service.create_commitment(ctx, data)
        assert commitment.assigned_to_user_id == founder.id
        with pytest.raises(PlanForbiddenError):
            commitment_service.assign_commitment(ctx, commitment.id, teammate.id)

    def test_super_admin_bypasses_plan(self, make_org, make_user, make_client, as_ctx):
        org = make_org(plan=PLAN_FREELANCER)
        admin = make_user(org, role=ROLE_SUPER_ADMIN)
        teammate = make_user(org)
        customer = make_client(org)

        commitment = commitment_service.create_commitment(
            as_ctx(admin),
            {"client_id": customer.id, "title": "T", "scope_description": "S"},
            assigned_to_user_id=teammate.id,
        )
        assert commitment.assigned_to_user_id == teammate.id

    def test_assign_records_previous(self, founder, founder_ctx, manager, new_commitment):
        commitment = new_commitment()
        commitment_service.assign_commitment(founder_ctx, commitment.id, manager.id)

        event = db.session.execute(
            select(ApprovalEvent).where(ApprovalEvent.event_type == "COMMITMENT_ASSIGNED")
        ).scalar_one()
        assert event.meta == {"previous_assigned_to_user_id": founder.id}
        assert db.session.get(Commitment, commitment.id).assigned_to_user_id == manager.id

    def test_assign_inactive_user(self, org, make_user, founder_ctx, new_commitment):
        gone = make_user(org, is_active=False)
        commitment = new_commitment()
        with pytest.raises(NotFoundError):
            commitment_service.assign_commitment(founder_ctx, commitment.id, gone.id)

    def test_manager_reads_are_not_found(self, manager_ctx, new_commitment):
        commitment = new_commitment()
        with pytest.raises(NotFoundError):
            commitment_service.get_commitment(manager_ctx, commitment.id)
        with pytest.raises(NotFoundError):
            commitment_service.get_history(manager_ctx, commitment.id)
        assert commitment_service.list_commitments(manager_ctx)["total"] == 0

    def test_manager_mutations_are_forbidden(self, manager_ctx, new_commitment):
        commitment = new_commitment()
        with pytest.raises(ForbiddenError):
            commitment_service.update_commitment(manager_ctx, commitment.id, {"title": "Mine"})
        with pytest.raises(ForbiddenError):
            commitment_service.send_approval_link(manager_ctx, commitment.id)

    def test_manager_sees_assigned(self, founder_ctx, manager, manager_ctx, new_commitment):
        commitment = new_commitment()
        commitment_service.assign_commitment(founder_ctx, commitment.id, manager.id)

        assert commitment_service.get_commitment(manager_ctx, commitment.id).id == commitment.id
        assert commitment_service.list_commitments(manager_ctx)["total"] == 1

    def test_other_org_is_not_found(self, make_org, make_user, as_ctx, new_commitment):
        stranger = as_ctx(make_user(make_org()))
        commitment = new_commitment()
        with pytest.raises(NotFoundError):
            commitment_service.get_commitment(stranger, commitment.id)
        with pytest.raises(NotFoundError):
            commitment_service.update_commitment(stranger, commitment.id, {"title": "x"})

    def test_sanitize_strips_money_for_manager(self):
        data = {"id": 1, "amount": 10, "currency": "INR", "title": "T"}
        assert sanitize_commitment_for_role(data, ROLE_MANAGER) == {"id": 1, "title": "T"}
        assert sanitize_commitment_for_role(data, "FOUNDER") == data

    def test_list_filters_and_paging(self, founder_ctx, new_commitment):
        first = new_commitment(title="One")
        new_commitment(title="Two")
        commitment_service.send_approval_link(founder_ctx, first.id)

        result = commitment_service.list_commitments(founder_ctx, {"status": STATUS_AWAITING_CLIENT_APPROVAL})
        assert result["total"] == 1
        assert result["items"][0].id == first.id

        page = commitment_service.list_commitments(founder_ctx, {"limit": 1, "page": 2})
        assert page["total"] == 2
        assert len(page["items"]) == 1
        assert page["page"] == 2

    def test_history_is_oldest_first(self, founder_ctx, new_commitment):
        commitment = new_commitment()
        commitment_service.update_commitment(founder_ctx, commitment.id, {"title": "Renamed"})
        events = commitment_service.get_history(founder_ctx, commitment.id)
        assert [e.event_type for e in events] == ["COMMITMENT_CREATED", "COMMITMENT_UPDATED"]
