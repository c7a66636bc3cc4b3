import pytest

import forum_store
from db import exec_sql, fetch_all, fetch_one
from errors import IssueResolvedError, NotFoundError, PermissionDenied, ValidationError
from forum_store import (
    add_comment,
    audit_points,
    cast_vote,
    check_password,
    create_issue,
    create_user,
    delete_issue,
    get_issue,
    get_user_votes,
    leaderboard,
    list_comments,
    list_issues,
    list_user_issues,
    mark_as_fix,
    point_history,
    refresh_user_points,
    repair_points,
    set_password_for_email,
    update_issue,
    verify_user,
)
from statafix_engine import IssueDraft


# ---------- profiles ----------

def test_register_and_login(engine, alice):
    assert alice["username"] == "alice"
    assert alice["cumulative_points"] == 0
    assert verify_user(engine, "alice", "secret123")["id"] == alice["id"]
    assert verify_user(engine, "alice", "wrong-password") is None
    assert verify_user(engine, "nobody", "secret123") is None


def test_password_is_not_stored_in_clear(engine, alice):
    row = fetch_one(engine, "SELECT password_hash FROM profiles WHERE id=:i", {"i": alice["id"]})
    assert "secret123" not in row["password_hash"]
    assert check_password("secret123", row["password_hash"])


def test_duplicate_username_rejected(engine, alice):
    with pytest.raises(ValidationError, match="Username already exists"):
        create_user(engine, "alice", "another1")


def test_registration_race_reports_taken_username(engine, alice, monkeypatch):
    # the other request inserted between our lookup and our insert
    monkeypatch.setattr(forum_store, "get_user_by_username", lambda bind, username: None)
    with pytest.raises(ValidationError, match="Username already exists"):
        create_user(engine, "alice", "another1")


def test_short_password_rejected(engine):
    with pytest.raises(ValidationError):
        create_user(engine, "carol", "123")


def test_duplicate_email_rejected(engine, alice):
    with pytest.raises(ValidationError):
        create_user(engine, "alice2", "another1", "ALICE@example.com")


def test_set_password_for_email(engine, alice):
    assert set_password_for_email(engine, "Alice@Example.com", "brandnew1") == 1
    assert verify_user(engine, "alice", "brandnew1") is not None
    assert verify_user(engine, "alice", "secret123") is None
    assert set_password_for_email(engine, "ghost@example.com", "whatever1") == 0


# ---------- issues ----------

def test_create_issue_awards_post_points(engine, alice, draft, points):
    issue = create_issue(engine, alice, draft)
    assert issue["is_resolved"] is False
    assert issue["upvotes"] == 0 and issue["downvotes"] == 0
    assert issue["username"] == "alice"
    assert issue["image_url"] is None
    assert points(alice) == 5
    history = point_history(engine, alice["id"])
    assert history["reason"].tolist() == ["POST_ERROR"]


def test_create_issue_validation(engine, alice, draft, points):
    draft.description = "   "
    with pytest.raises(ValidationError, match="required"):
        create_issue(engine, alice, draft)
    assert points(alice) == 0
    assert list_issues(engine).empty


def test_list_issues_search_sort_and_comment_counts(engine, alice, bob, draft):
    first = create_issue(engine, alice, draft)
    second = create_issue(engine, bob, IssueDraft("tsset gaps", "tsset year", "Syntax Error", "repeated time values"))
    add_comment(engine, bob, first["id"], "use duplicates report id")

    df = list_issues(engine, sort_by="hot")
    assert df["id"].tolist() == [first["id"], second["id"]]
    assert df.set_index("id").loc[first["id"], "comment_count"] == 1

    assert list_issues(engine, search="TSSET")["id"].tolist() == [second["id"]]
    assert list_user_issues(engine, bob["id"])["id"].tolist() == [second["id"]]


def test_update_issue_author_only(engine, alice, bob, draft):
    issue = create_issue(engine, alice, draft)
    edited = IssueDraft("merge: key not unique", draft.command, "Logic Error", draft.description,
                        "https://example.com/shot.png")
    with pytest.raises(PermissionDenied):
        update_issue(engine, bob, issue["id"], edited)

    updated = update_issue(engine, alice, issue["id"], edited)
    assert updated["title"] == "merge: key not unique"
    assert updated["error_category"] == "Logic Error"
    assert updated["image_url"] == "https://example.com/shot.png"


def test_delete_issue_cascades_but_keeps_ledger(engine, alice, bob, draft, points):
    issue = create_issue(engine, alice, draft)
    comment = add_comment(engine, bob, issue["id"], "try m:1")
    cast_vote(engine, bob, "issue", issue["id"], "upvote")
    cast_vote(engine, alice, "comment", comment["id"], "upvote")

    with pytest.raises(PermissionDenied):
        delete_issue(engine, bob, issue["id"])

    deleted = delete_issue(engine, alice, issue["id"])
    assert deleted["id"] == issue["id"]
    with pytest.raises(NotFoundError):
        get_issue(engine, issue["id"])
    assert list_comments(engine, issue["id"]) == []
    assert fetch_all(engine, "SELECT * FROM votes") == []
    assert points(alice) == 5
    assert points(bob) == 3


# ---------- comments + fixes ----------

def test_add_comment_awards_suggestion_points(engine, alice, bob, draft, points):
    issue = create_issue(engine, alice, draft)
    c = add_comment(engine, bob, issue["id"], "  sort id first  ")
    assert c["comment_text"] == "sort id first"
    assert c["is_verified_fix"] is False
    assert points(bob) == 3

    with pytest.raises(ValidationError):
        add_comment(engine, bob, issue["id"], "   ")
    assert points(bob) == 3


def test_comments_listed_oldest_first(engine, alice, bob, draft):
    issue = create_issue(engine, alice, draft)
    add_comment(engine, bob, issue["id"], "first")
    add_comment(engine, alice, issue["id"], "second")
    assert [c["comment_text"] for c in list_comments(engine, issue["id"])] == ["first", "second"]


def test_mark_as_fix_resolves_and_awards(engine, alice, bob, draft, points):
    issue = create_issue(engine, alice, draft)
    c = add_comment(engine, bob, issue["id"], "use m:1")

    with pytest.raises(PermissionDenied, match="Only the issue author"):
        mark_as_fix(engine, bob, issue["id"], c["id"])

    fixed = mark_as_fix(engine, alice, issue["id"], c["id"])
    assert fixed["is_verified_fix"] is True
    assert get_issue(engine, issue["id"])["is_resolved"] is True
    assert points(bob) == 3 + 5
    assert refresh_user_points(engine, bob)["cumulative_points"] == 8


def test_mark_as_fix_rejects_comment_from_other_issue(engine, alice, bob, draft):
    one = create_issue(engine, alice, draft)
    other = create_issue(engine, bob, IssueDraft("t", "reshape", "Other", "d"))
    c = add_comment(engine, alice, other["id"], "elsewhere")
    with pytest.raises(NotFoundError):
        mark_as_fix(engine, alice, one["id"], c["id"])


def test_resolved_issue_is_closed(engine, alice, bob, draft):
    issue = create_issue(engine, alice, draft)
    c = add_comment(engine, bob, issue["id"], "fix")
    mark_as_fix(engine, alice, issue["id"], c["id"])

    with pytest.raises(IssueResolvedError):
        add_comment(engine, bob, issue["id"], "late idea")
    with pytest.raises(IssueResolvedError):
        cast_vote(engine, bob, "issue", issue["id"], "upvote")
    with pytest.raises(IssueResolvedError):
        cast_vote(engine, alice, "comment", c["id"], "upvote")
    with pytest.raises(IssueResolvedError):
        mark_as_fix(engine, alice, issue["id"], c["id"])
    with pytest.raises(IssueResolvedError):
        update_issue(engine, alice, issue["id"], draft)
    with pytest.raises(IssueResolvedError):
        delete_issue(engine, alice, issue["id"])


# ---------- votes ----------

def test_vote_toggle_and_switch(engine, alice, bob, draft):
    issue = create_issue(engine, alice, draft)

    assert cast_vote(engine, bob, "issue", issue["id"], "upvote") == {"upvotes": 1, "downvotes": 0, "vote": "upvote"}
    assert cast_vote(engine, alice, "issue", issue["id"], "upvote")["upvotes"] == 2
    # switch
    assert cast_vote(engine, bob, "issue", issue["id"], "downvote") == {"upvotes": 1, "downvotes": 1, "vote": "downvote"}
    # toggle off
    assert cast_vote(engine, bob, "issue", issue["id"], "downvote") == {"upvotes": 1, "downvotes": 0, "vote": None}

    stored = get_issue(engine, issue["id"])
    assert (stored["upvotes"], stored["downvotes"]) == (1, 0)
    rows = fetch_all(engine, "SELECT * FROM votes WHERE target_id=:t", {"t": issue["id"]})
    assert len(rows) == 1


def test_votes_do_not_award_points(engine, alice, bob, draft, points):
    issue = create_issue(engine, alice, draft)
    cast_vote(engine, bob, "issue", issue["id"], "upvote")
    assert points(alice) == 5
    assert points(bob) == 0


def test_comment_votes_and_user_vote_lookup(engine, alice, bob, draft):
    issue = create_issue(engine, alice, draft)
    c1 = add_comment(engine, bob, issue["id"], "one")
    c2 = add_comment(engine, bob, issue["id"], "two")
    cast_vote(engine, alice, "comment", c1["id"], "downvote")
    cast_vote(engine, alice, "issue", issue["id"], "upvote")

    assert get_user_votes(engine, alice["id"], "comment", [c1["id"], c2["id"]]) == {c1["id"]: "downvote"}
    assert get_user_votes(engine, alice["id"], "issue", [issue["id"]]) == {issue["id"]: "upvote"}
    assert get_user_votes(engine, alice["id"], "issue", []) == {}
    assert list_comments(engine, issue["id"])[0]["downvotes"] == 1


def test_user_vote_lookup_only_returns_requested_targets(engine, alice, bob, draft):
    first = create_issue(engine, alice, draft)
    second = create_issue(engine, alice, draft)
    cast_vote(engine, bob, "issue", first["id"], "upvote")
    cast_vote(engine, bob, "issue", second["id"], "downvote")

    assert get_user_votes(engine, bob["id"], "issue", [second["id"], second["id"]]) == {second["id"]: "downvote"}
    assert get_user_votes(engine, bob["id"], "comment", [first["id"]]) == {}


def test_vote_validation(engine, alice, draft):
    issue = create_issue(engine, alice, draft)
    with pytest.raises(ValidationError):
        cast_vote(engine, alice, "profile", issue["id"], "upvote")
    with pytest.raises(ValidationError):
        cast_vote(engine, alice, "issue", issue["id"], "meh")
    with pytest.raises(NotFoundError):
        cast_vote(engine, alice, "comment", 999, "upvote")


# ---------- leaderboard + ledger ----------

def test_leaderboard_order(engine, alice, bob, draft):
    issue = create_issue(engine, alice, draft)          # alice 5
    c = add_comment(engine, bob, issue["id"], "fix")     # bob 3
    mark_as_fix(engine, alice, issue["id"], c["id"])     # bob 8
    create_user(engine, "carol", "carol123")             # carol 0

    board = leaderboard(engine)
    assert board["username"].tolist() == ["bob", "alice", "carol"]
    assert board["cumulative_points"].tolist() == [8, 5, 0]
    assert board["rank"].tolist() == ["🥇", "🥈", "🥉"]
    assert len(leaderboard(engine, limit=2)) == 2


def test_audit_and_repair_points(engine, alice, bob, draft, points):
    create_issue(engine, alice, draft)
    assert audit_points(engine).empty

    exec_sql(engine, "UPDATE profiles SET cumulative_points=42 WHERE id=:i", {"i": alice["id"]})
    drift = audit_points(engine)
    assert drift["username"].tolist() == ["alice"]
    assert int(drift.loc[0, "drift"]) == 37

    assert repair_points(engine) == 1
    assert points(alice) == 5
    assert audit_points(engine).empty
