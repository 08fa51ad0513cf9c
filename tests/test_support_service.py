import pytest

import purchase_service
import signal_service
import support_service
from errors import AccessDenied, NotFound


def test_search_matches_email_name_and_member_id(session, make_user):
    agent = make_user(role="customer_service")
    grace = make_user(email="grace@example.com", first_name="Grace", last_name="Hopper")
    make_user(email="alan@example.com", first_name="Alan", last_name="Turing")

    assert [c["user"].id for c in support_service.search_customers(session, agent, "HOPPER")] == [grace.id]
    assert [c["user"].id for c in support_service.search_customers(session, agent, "grace@")] == [grace.id]

    unique_id = support_service.search_customers(session, agent, "grace")[0]["profile"].unique_id
    assert [c["user"].id for c in support_service.search_customers(session, agent, unique_id)] == [grace.id]


def test_search_lists_only_customers(session, make_user):
    admin = make_user(role="admin")
    make_user(role="customer_service")
    customer = make_user()

    results = support_service.search_customers(session, admin)
    assert [c["user"].id for c in results] == [customer.id]
    assert results[0]["subscription"].status == "pending"


def test_search_requires_staff(session, make_user):
    user = make_user()
    with pytest.raises(AccessDenied):
        support_service.search_customers(session, user, "")


def test_customer_detail(session, make_user):
    agent = make_user(role="customer_service")
    admin = make_user(role="admin")
    user = make_user(plan_type="pro")
    purchase_service.process_purchase_and_notify(session, user, "pro", "paypal", transaction_id="PP-9")
    signal = signal_service.create_signal(session, admin, "btcusdt", "H4", "buy", 60000, 58000, "64000")
    signal_service.track_signal_view(session, user.id, signal.id)

    detail = support_service.get_customer_detail(session, agent, user.id)
    assert detail["customer"].id == user.id
    assert detail["profile"].user_id == user.id
    assert [p.transaction_id for p in detail["purchases"]] == ["PP-9"]
    assert {s.status for s in detail["subscriptions"]} == {"active"}
    assert {e.email_type for e in detail["emails"]} == {"welcome", "payment_confirmation"}
    assert detail["signals_viewed"] == 1


def test_customer_detail_unknown_or_staff(session, make_user):
    agent = make_user(role="customer_service")
    with pytest.raises(NotFound):
        support_service.get_customer_detail(session, agent, 9999)
    with pytest.raises(NotFound):
        support_service.get_customer_detail(session, agent, agent.id)


def test_only_admin_deactivates(session, make_user):
    agent = make_user(role="customer_service")
    admin = make_user(role="admin")
    user = make_user()

    with pytest.raises(AccessDenied):
        support_service.set_customer_active(session, agent, user.id, False)
    assert support_service.set_customer_active(session, admin, user.id, False).is_active is False


def test_search_treats_wildcards_literally(session, make_user):
    agent = make_user(role="customer_service")
    make_user(email="plain@example.com")
    underscored = make_user(email="first_last@example.com")

    assert [c["user"].id for c in support_service.search_customers(session, agent, "_")] == [underscored.id]
    assert support_service.search_customers(session, agent, "%") == []
