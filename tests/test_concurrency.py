from concurrent.futures import ThreadPoolExecutor

from app.core.errors import InsufficientCredits, NoAllocationRemaining
from app.models.payment import PaymentRecord
from app.models.usage_record import ALLOCATION_FREE, UsageRecord
from app.services import ledger


def _spend(session_factory, user_id, cost):
    db = session_factory()
    try:
        ledger.spend_ai_tool_credits(db, user_id, "find_subreddits", cost)
        return True
    except InsufficientCredits:
        return False
    finally:
        db.close()


def _grant(session_factory, user_id, payment_id):
    db = session_factory()
    try:
        return ledger.grant_credits_from_payment(db, payment_id, user_id, 100).applied
    finally:
        db.close()


def test_concurrent_spends_never_overdraw(db, make_user, session_factory):
    user = make_user(purchased_credits=50)

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda _: _spend(session_factory, user.id, 5), range(20)))

    assert results.count(True) == 10
    assert ledger.current_balance(db, user.id) == 0


def test_concurrent_deliveries_grant_once(db, make_user, session_factory):
    user = make_user()

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(lambda _: _grant(session_factory, user.id, "pay_race"), range(5)))

    assert results.count(True) == 1
    assert ledger.current_balance(db, user.id) == 100
    assert db.query(PaymentRecord).filter_by(external_payment_id="pay_race").count() == 1


def _charge_tool(session_factory, user_id, tool, post_id):
    db = session_factory()
    try:
        ledger.spend_ai_tool_credits(db, user_id, tool, 1, usage_record_id=post_id)
    finally:
        db.close()


def test_concurrent_tools_on_one_post_all_land(db, make_user, session_factory):
    user = make_user(purchased_credits=10)
    post = ledger.record_usage(db, user.id, title="Draft")
    tools = ["check_rules", "detect_anomalies", "suggest_flairs", "check_rules"]

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(lambda tool: _charge_tool(session_factory, user.id, tool, post.id), tools))

    db.expire_all()
    record = db.get(UsageRecord, post.id)
    assert ledger.current_balance(db, user.id) == 6
    assert record.credits_spent == 4
    assert sorted(record.tools_used) == ["check_rules", "detect_anomalies", "suggest_flairs"]


def _post(session_factory, user_id):
    db = session_factory()
    try:
        return ledger.record_usage(db, user_id, allocation_kind=ALLOCATION_FREE).allocation_kind
    except NoAllocationRemaining:
        return None
    finally:
        db.close()


def test_concurrent_posts_share_one_free_allocation(db, make_user, session_factory):
    user = make_user()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: _post(session_factory, user.id), range(8)))

    assert results.count(ALLOCATION_FREE) == 1
    assert results.count(None) == 7
    assert db.query(UsageRecord).filter_by(user_id=user.id).count() == 1
