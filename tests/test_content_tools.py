from app.services import content_tools
from app.services.content_tools import PostInput


def test_check_rules_flags_obvious_problems():
    post = PostInput(title="BUY CHEAP", body="see https://example.com", subreddit="deals")

    result = content_tools.check_rules(post, rules=[{"short_name": "No spam"}])

    violations = " ".join(result["violations"])
    assert "Title too short" in violations
    assert "commercial language" in violations
    assert "capital letters" in violations
    assert "External links" in violations
    assert result["rules_considered"] == 1


def test_check_rules_clean_post():
    post = PostInput(
        title="What are good resources for learning Rust?",
        body="I have a few years of Python experience and want to pick up Rust.",
    )

    assert content_tools.check_rules(post)["violations"] == []


def test_detect_anomalies():
    post = PostInput(
        title="FREE MONEY NOW!!!",
        body="Click here https://bit.ly/x and subscribe to my channel!!! ACT NOW",
    )

    types = {a["type"] for a in content_tools.detect_anomalies(post)["anomalies"]}

    assert {"Suspicious Links", "Excessive Punctuation", "Excessive Caps", "Self-Promotion", "Spam Patterns"} <= types


def test_find_subreddits_by_topic_and_default():
    coding = content_tools.find_subreddits(PostInput(title="A code review question", body=""))
    other = content_tools.find_subreddits(PostInput(title="My cat", body="sleeps a lot"))

    names = [a["name"] for a in coding["alternatives"]]
    assert "programming" in names
    assert "AskReddit" in names
    assert [a["name"] for a in other["alternatives"]] == ["mildlyinteresting", "todayilearned"]


def test_suggest_flairs_boosts_matching_flair():
    post = PostInput(title="A tutorial on decorators", body="learn how they work", subreddit="programming")

    suggestions = content_tools.suggest_flairs(post)["suggestions"]

    assert len(suggestions) == 3
    assert suggestions[0]["text"] == "Help"
    assert suggestions[0]["confidence"] == 100
    assert "Tutorial" in [s["text"] for s in suggestions]


def test_parse_model_json():
    assert content_tools.parse_model_json('noise {"violations": []} trailing', "violations") == {"violations": []}
    assert content_tools.parse_model_json('```json\n{"anomalies": [1]}\n```', "anomalies") == {"anomalies": [1]}
    assert content_tools.parse_model_json('{"violations": "none"}', "violations") is None
    assert content_tools.parse_model_json("{not json}", "violations") is None
    assert content_tools.parse_model_json("", "violations") is None


def test_post_viability_against_strict_rules():
    rules = [
        {"short_name": "No spam", "description": "No karma farming or low effort posts"},
        {"short_name": "Privacy", "description": "No personal information"},
    ]
    begging = PostInput(title="Please upvote this", body="I need karma to post elsewhere", subreddit="pics")
    clean = PostInput(title="Sunset over the harbour", body="Taken last night from the pier with a phone")

    flagged = content_tools.check_post_viability(begging, rules)
    passed = content_tools.check_post_viability(clean, rules)

    assert flagged["can_post"] is False
    assert flagged["conflicting_rules"] == ["No spam"]
    assert flagged["suggestions"] == ["Focus on providing valuable content rather than asking for votes"]
    assert passed["can_post"] is True
    assert passed["conflicting_rules"] == []
