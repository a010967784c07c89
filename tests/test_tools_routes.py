import pytest

from app.services import ledger
from app.services.gemini_client import GeminiError
from app.services.reddit_client import RedditError

POST = {"title": "How do I structure a FastAPI project?", "body": "Looking for advice on layout.", "subreddit": "learnpython"}


@pytest.fixture
def funded_user(db, make_user):
    user = make_user()
    ledger.grant_credits_from_payment(db, "pay_400", user.id, 5)
    return user


def test_tool_is_charged_and_uses_model_answer(client, auth_headers, gemini, reddit, db, funded_user):
    reddit.get_rules.return_value = [{"short_name": "No memes", "description": "Text posts only"}]
    gemini.generate.return_value = '```json\n{"violations": ["Title is phrased as a question"]}\n```'

    response = client.post("/api/tools/check-rules", json=POST, headers=auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "ai"
    assert body["violations"] == ["Title is phrased as a question"]
    assert body["credits_charged"] == 1
    assert body["credits_remaining"] == 4
    assert "No memes" in gemini.generate.call_args.args[0]
    assert ledger.current_balance(db, funded_user.id) == 4


def test_model_failure_falls_back_and_keeps_charge(client, auth_headers, gemini, db, funded_user):
    gemini.generate.side_effect = GeminiError("timeout")

    response = client.post("/api/tools/find-subreddits", json=POST, headers=auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "fallback"
    assert body["alternatives"]
    assert body["credits_charged"] == 2
    assert ledger.current_balance(db, funded_user.id) == 3


def test_unparseable_answer_falls_back(client, auth_headers, gemini, funded_user):
    gemini.generate.return_value = "Sure! Here are some thoughts."

    body = client.post("/api/tools/detect-anomalies", json=POST, headers=auth_headers()).json()

    assert body["source"] == "fallback"
    assert body["analyzed"] is True


def test_model_failure_refunds_when_configured(settings, client, auth_headers, gemini, db, funded_user):
    settings.AI_REFUND_ON_FAILURE = True
    gemini.generate.side_effect = GeminiError("quota exceeded")

    response = client.post("/api/tools/find-subreddits", json=POST, headers=auth_headers())

    assert response.status_code == 503
    assert response.json()["error"] == "upstream_unavailable"
    assert ledger.current_balance(db, funded_user.id) == 5


def test_insufficient_credits(client, auth_headers, gemini, db, make_user):
    user = make_user(purchased_credits=1)

    response = client.post("/api/tools/find-subreddits", json=POST, headers=auth_headers())

    assert response.status_code == 402
    assert response.json() == {
        "error": "insufficient_credits",
        "detail": "Not enough credits for this tool. Buy credits to continue.",
        "balance": 1,
        "required": 2,
    }
    gemini.generate.assert_not_called()
    assert ledger.current_balance(db, user.id) == 1


def test_reddit_outage_does_not_block_flair_suggestions(client, auth_headers, gemini, reddit, funded_user):
    reddit.get_flairs.side_effect = RedditError("503 from reddit")
    gemini.generate.return_value = (
        '{"suggestions": [{"text": "Help", "confidence": 90, "reason": "asks for help"},'
        ' {"text": "Discussion", "confidence": 60, "reason": "open ended"},'
        ' {"text": "Meta", "confidence": 10, "reason": "unlikely"},'
        ' {"text": "Other", "confidence": 5, "reason": "filler"}]}'
    )

    body = client.post("/api/tools/suggest-flairs", json=POST, headers=auth_headers()).json()

    assert body["source"] == "ai"
    assert [s["text"] for s in body["suggestions"]] == ["Help", "Discussion", "Meta"]


def test_charge_attaches_to_existing_post(client, auth_headers, gemini, db, funded_user):
    gemini.generate.return_value = '{"anomalies": []}'
    post = ledger.record_usage(db, funded_user.id, title="Draft")

    body = client.post(
        "/api/tools/detect-anomalies",
        json={**POST, "post_id": post.id},
        headers=auth_headers(),
    ).json()

    db.expire_all()
    assert ledger.usage_summary(db, funded_user.id)["posts_this_month"] == 1
    assert body["credits_remaining"] == 4
    assert db.get(type(post), post.id).tools_used == ["detect_anomalies"]


def test_invalid_subreddit_is_rejected_before_charging(client, auth_headers, db, funded_user):
    response = client.post(
        "/api/tools/check-rules",
        json={**POST, "subreddit": "not a subreddit!"},
        headers=auth_headers(),
    )

    assert response.status_code == 400
    assert ledger.current_balance(db, funded_user.id) == 5
