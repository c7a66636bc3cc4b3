from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import bcrypt  # bcrypt library (NOT passlib)
import pandas as pd
from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from db import Bind, exec_sql, fetch_all, fetch_one, transaction
from errors import IssueResolvedError, NotFoundError, PermissionDenied, ValidationError
from statafix_engine import (
    LEADERBOARD_LIMIT,
    MIN_PASSWORD_LENGTH,
    POINT_VALUES,
    TARGET_TYPES,
    VOTE_TYPES,
    IssueDraft,
    PointReason,
    issues_to_frame,
    filter_issues,
    next_vote,
    rank_leaderboard,
    reconcile_points,
    sort_issues,
    sort_my_issues,
    validate_issue_draft,
)

logger = logging.getLogger(__name__)


# =========================
# DB bootstrap (SQLite dev)
# =========================
SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS profiles (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      username TEXT UNIQUE NOT NULL,
      email TEXT UNIQUE NULL,
      password_hash TEXT NOT NULL,
      cumulative_points INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS stata_issues (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      user_id INTEGER NOT NULL,
      username TEXT NOT NULL,
      title TEXT NOT NULL,
      command TEXT NOT NULL,
      error_category TEXT NOT NULL,
      description TEXT NOT NULL,
      image_url TEXT NULL,
      is_resolved INTEGER NOT NULL DEFAULT 0,
      upvotes INTEGER NOT NULL DEFAULT 0,
      downvotes INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS comments (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      issue_id INTEGER NOT NULL,
      user_id INTEGER NOT NULL,
      username TEXT NOT NULL,
      comment_text TEXT NOT NULL,
      is_verified_fix INTEGER NOT NULL DEFAULT 0,
      upvotes INTEGER NOT NULL DEFAULT 0,
      downvotes INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS votes (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      user_id INTEGER NOT NULL,
      target_id INTEGER NOT NULL,
      target_type TEXT NOT NULL,
      vote_type TEXT NOT NULL,
      created_at TEXT NOT NULL,
      UNIQUE(user_id, target_id, target_type)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS point_ledger (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      user_id INTEGER NOT NULL,
      points_change INTEGER NOT NULL,
      reason TEXT NOT NULL,
      created_at TEXT NOT NULL
    );
    """,
]


def bootstrap_sqlite(engine: Engine) -> None:
    for ddl in SQLITE_SCHEMA:
        exec_sql(engine, ddl)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# Profiles (bcrypt + sha256 prehash)
# =========================
def _pw_bytes(password: str) -> bytes:
    # avoids bcrypt 72-byte limit by hashing to fixed length
    return hashlib.sha256(password.encode("utf-8")).hexdigest().encode("utf-8")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_pw_bytes(password), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, stored: str) -> bool:
    try:
        return bcrypt.checkpw(_pw_bytes(password), str(stored).encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


def _public_profile(row) -> dict:
    return {
        "id": int(row["id"]),
        "username": row["username"],
        "email": row.get("email"),
        "cumulative_points": int(row.get("cumulative_points") or 0),
    }


def get_user_by_username(bind: Bind, username: str):
    return fetch_one(bind, "SELECT * FROM profiles WHERE username=:u", {"u": username.strip()})


def _email_taken(bind: Bind, email: str) -> bool:
    return fetch_one(bind, "SELECT id FROM profiles WHERE email=:e", {"e": email}) is not None


def create_user(engine: Engine, username: str, password: str, email: Optional[str] = None) -> dict:
    username = (username or "").strip()
    email = (email or "").strip().lower() or None
    if not username:
        raise ValidationError("Username is required.")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    try:
        with transaction(engine) as conn:
            if get_user_by_username(conn, username):
                raise ValidationError("Username already exists")
            if email and _email_taken(conn, email):
                raise ValidationError("This email is already linked to another account.")
            row = fetch_one(
                conn,
                """
                INSERT INTO profiles(username, email, password_hash, cumulative_points, created_at)
                VALUES(:u,:e,:p,0,:t)
                RETURNING id, username, email, cumulative_points
                """,
                {"u": username, "e": email, "p": hash_password(password), "t": _now()},
            )
    except IntegrityError as e:
        # a concurrent registration won the unique constraint
        logger.info("Registration race for %s: %s", username, e.orig)
        if email and _email_taken(engine, email) and not get_user_by_username(engine, username):
            raise ValidationError("This email is already linked to another account.") from e
        raise ValidationError("Username already exists") from e
    logger.info("Registered profile %s (id=%s)", username, row["id"])
    return _public_profile(row)


def verify_user(engine: Engine, username: str, password: str) -> Optional[dict]:
    u = get_user_by_username(engine, username or "")
    if not u or not check_password(password or "", u["password_hash"]):
        return None
    return _public_profile(u)


def get_profile(bind: Bind, user_id: int) -> dict:
    row = fetch_one(bind, "SELECT * FROM profiles WHERE id=:i", {"i": int(user_id)})
    if not row:
        raise NotFoundError(f"Profile {user_id} not found")
    return _public_profile(row)


def refresh_user_points(engine: Engine, user: dict) -> dict:
    row = fetch_one(engine, "SELECT cumulative_points FROM profiles WHERE id=:i", {"i": int(user["id"])})
    if not row:
        return user
    return {**user, "cumulative_points": int(row["cumulative_points"] or 0)}


def set_password_for_email(engine: Engine, email: str, password: str) -> int:
    """Mirror a password reset done through the hosted auth service onto the linked profile."""
    email = (email or "").strip().lower()
    if not email:
        return 0
    n = exec_sql(
        engine,
        "UPDATE profiles SET password_hash=:p WHERE email=:e",
        {"p": hash_password(password), "e": email},
    )
    if not n:
        logger.warning("Password reset for %s matched no forum profile", email)
    return n


# =========================
# Points
# =========================
def award_points(bind: Bind, user_id: int, reason: PointReason) -> int:
    points = POINT_VALUES[reason]
    exec_sql(
        bind,
        "INSERT INTO point_ledger(user_id, points_change, reason, created_at) VALUES(:u,:p,:r,:t)",
        {"u": int(user_id), "p": points, "r": reason.value, "t": _now()},
    )
    exec_sql(
        bind,
        "UPDATE profiles SET cumulative_points = COALESCE(cumulative_points, 0) + :p WHERE id=:u",
        {"u": int(user_id), "p": points},
    )
    logger.debug("Awarded %+d (%s) to user %s", points, reason.value, user_id)
    return points


def point_history(engine: Engine, user_id: int) -> pd.DataFrame:
    rows = fetch_all(
        engine,
        "SELECT points_change, reason, created_at FROM point_ledger WHERE user_id=:u ORDER BY id DESC",
        {"u": int(user_id)},
    )
    return pd.DataFrame(rows, columns=["points_change", "reason", "created_at"])


def _ledger_totals(bind: Bind) -> List:
    return fetch_all(bind, "SELECT user_id, SUM(points_change) AS ledger_points FROM point_ledger GROUP BY user_id")


def audit_points(bind: Bind) -> pd.DataFrame:
    profiles = fetch_all(bind, "SELECT id, username, cumulative_points FROM profiles")
    return reconcile_points(profiles, _ledger_totals(bind))


def repair_points(engine: Engine) -> int:
    with transaction(engine) as conn:
        drift = audit_points(conn)
        for _, r in drift.iterrows():
            exec_sql(
                conn,
                "UPDATE profiles SET cumulative_points=:p WHERE id=:i",
                {"p": int(r["ledger_points"]), "i": int(r["id"])},
            )
    if len(drift):
        logger.warning("Repaired cumulative_points for %d profile(s)", len(drift))
    return int(len(drift))


def leaderboard(engine: Engine, limit: int = LEADERBOARD_LIMIT) -> pd.DataFrame:
    rows = fetch_all(
        engine,
        "SELECT id, username, cumulative_points FROM profiles ORDER BY cumulative_points DESC, id ASC LIMIT :l",
        {"l": int(limit)},
    )
    return rank_leaderboard(rows)


# =========================
# Issues
# =========================
ISSUE_LIST_SQL = """
SELECT i.*,
       (SELECT COUNT(*) FROM comments c WHERE c.issue_id = i.id) AS comment_count
FROM stata_issues i
"""


def _issue_dict(row) -> dict:
    d = dict(row)
    d["is_resolved"] = bool(d.get("is_resolved"))
    d["upvotes"] = int(d.get("upvotes") or 0)
    d["downvotes"] = int(d.get("downvotes") or 0)
    return d


def _comment_dict(row) -> dict:
    d = dict(row)
    d["is_verified_fix"] = bool(d.get("is_verified_fix"))
    d["upvotes"] = int(d.get("upvotes") or 0)
    d["downvotes"] = int(d.get("downvotes") or 0)
    return d


def _require_author(issue: dict, user: dict, action: str) -> None:
    if not user or int(issue["user_id"]) != int(user["id"]):
        raise PermissionDenied(f"You can only {action} your own issues")


def _require_open(issue: dict, action: str) -> None:
    if issue["is_resolved"]:
        raise IssueResolvedError(f"This issue is resolved; {action} is closed.")


def _check_draft(draft: IssueDraft) -> IssueDraft:
    errors = validate_issue_draft(draft)
    if errors:
        raise ValidationError(" ".join(errors))
    return draft.cleaned()


def list_issues(engine: Engine, search: str = "", sort_by: str = "created_at") -> pd.DataFrame:
    df = issues_to_frame(fetch_all(engine, ISSUE_LIST_SQL))
    return sort_issues(filter_issues(df, search), sort_by)


def list_user_issues(engine: Engine, user_id: int, sort_by: str = "newest") -> pd.DataFrame:
    rows = fetch_all(engine, ISSUE_LIST_SQL + " WHERE i.user_id=:u", {"u": int(user_id)})
    return sort_my_issues(issues_to_frame(rows), sort_by)


def get_issue(bind: Bind, issue_id: int) -> dict:
    row = fetch_one(bind, "SELECT * FROM stata_issues WHERE id=:i", {"i": int(issue_id)})
    if not row:
        raise NotFoundError("STATA Issue not found")
    return _issue_dict(row)


def create_issue(engine: Engine, user: dict, draft: IssueDraft) -> dict:
    d = _check_draft(draft)
    with transaction(engine) as conn:
        row = fetch_one(
            conn,
            """
            INSERT INTO stata_issues(user_id, username, title, command, error_category, description,
                                     image_url, is_resolved, upvotes, downvotes, created_at)
            VALUES(:u,:n,:title,:cmd,:cat,:desc,:img,:r,0,0,:t)
            RETURNING id
            """,
            {
                "u": int(user["id"]),
                "n": user["username"],
                "title": d.title,
                "cmd": d.command,
                "cat": d.error_category,
                "desc": d.description,
                "img": d.image_url or None,
                "r": False,
                "t": _now(),
            },
        )
        issue_id = int(row["id"])
        award_points(conn, user["id"], PointReason.POST_ERROR)
        issue = get_issue(conn, issue_id)
    logger.info("Issue %s created by %s", issue_id, user["username"])
    return issue


def update_issue(engine: Engine, user: dict, issue_id: int, draft: IssueDraft) -> dict:
    d = _check_draft(draft)
    with transaction(engine) as conn:
        issue = get_issue(conn, issue_id)
        _require_author(issue, user, "edit")
        _require_open(issue, "editing")
        exec_sql(
            conn,
            """
            UPDATE stata_issues
            SET title=:title, command=:cmd, error_category=:cat, description=:desc, image_url=:img
            WHERE id=:i
            """,
            {
                "title": d.title,
                "cmd": d.command,
                "cat": d.error_category,
                "desc": d.description,
                "img": d.image_url or None,
                "i": int(issue_id),
            },
        )
        updated = get_issue(conn, issue_id)
    logger.info("Issue %s updated by %s", issue_id, user["username"])
    return updated


def delete_issue(engine: Engine, user: dict, issue_id: int) -> dict:
    """Deletes the issue with its comments and votes. Returns the deleted row."""
    with transaction(engine) as conn:
        issue = get_issue(conn, issue_id)
        _require_author(issue, user, "delete")
        _require_open(issue, "deleting")
        params = {"i": int(issue_id)}
        exec_sql(
            conn,
            """
            DELETE FROM votes
            WHERE target_type='comment' AND target_id IN (SELECT id FROM comments WHERE issue_id=:i)
            """,
            params,
        )
        exec_sql(conn, "DELETE FROM votes WHERE target_type='issue' AND target_id=:i", params)
        exec_sql(conn, "DELETE FROM comments WHERE issue_id=:i", params)
        exec_sql(conn, "DELETE FROM stata_issues WHERE id=:i", params)
    logger.info("Issue %s deleted by %s", issue_id, user["username"])
    return issue


# =========================
# Comments + fixes
# =========================
def list_comments(engine: Engine, issue_id: int) -> List[dict]:
    rows = fetch_all(
        engine,
        "SELECT * FROM comments WHERE issue_id=:i ORDER BY created_at ASC, id ASC",
        {"i": int(issue_id)},
    )
    return [_comment_dict(r) for r in rows]


def add_comment(engine: Engine, user: dict, issue_id: int, text: str) -> dict:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Comment cannot be empty.")
    with transaction(engine) as conn:
        issue = get_issue(conn, issue_id)
        _require_open(issue, "commenting")
        row = fetch_one(
            conn,
            """
            INSERT INTO comments(issue_id, user_id, username, comment_text, is_verified_fix, upvotes, downvotes, created_at)
            VALUES(:i,:u,:n,:c,:v,0,0,:t)
            RETURNING *
            """,
            {"i": int(issue_id), "u": int(user["id"]), "n": user["username"], "c": text, "v": False, "t": _now()},
        )
        award_points(conn, user["id"], PointReason.SUGGESTION)
    logger.info("Comment %s added to issue %s by %s", row["id"], issue_id, user["username"])
    return _comment_dict(row)


def mark_as_fix(engine: Engine, user: dict, issue_id: int, comment_id: int) -> dict:
    with transaction(engine) as conn:
        issue = get_issue(conn, issue_id)
        if not user or int(issue["user_id"]) != int(user["id"]):
            raise PermissionDenied("Only the issue author can mark a fix")
        _require_open(issue, "marking a fix")
        comment = fetch_one(
            conn,
            "SELECT * FROM comments WHERE id=:c AND issue_id=:i",
            {"c": int(comment_id), "i": int(issue_id)},
        )
        if not comment:
            raise NotFoundError("Comment not found on this issue")
        exec_sql(conn, "UPDATE comments SET is_verified_fix=:v WHERE id=:c", {"v": True, "c": int(comment_id)})
        exec_sql(conn, "UPDATE stata_issues SET is_resolved=:r WHERE id=:i", {"r": True, "i": int(issue_id)})
        award_points(conn, comment["user_id"], PointReason.ACCEPTED_FIX)
        fixed = fetch_one(conn, "SELECT * FROM comments WHERE id=:c", {"c": int(comment_id)})
    logger.info("Comment %s accepted as fix for issue %s", comment_id, issue_id)
    return _comment_dict(fixed)


# =========================
# Votes
# =========================
VOTE_TABLES = {"issue": "stata_issues", "comment": "comments"}


def _vote_target_issue(bind: Bind, target_type: str, target_id: int) -> dict:
    if target_type == "issue":
        return get_issue(bind, target_id)
    comment = fetch_one(bind, "SELECT issue_id FROM comments WHERE id=:c", {"c": int(target_id)})
    if not comment:
        raise NotFoundError("Comment not found")
    return get_issue(bind, comment["issue_id"])


def cast_vote(engine: Engine, user: dict, target_type: str, target_id: int, vote_type: str) -> dict:
    """
    Toggle/switch the user's vote on an issue or comment, then recount the
    target's counters from the votes table.
    """
    if target_type not in TARGET_TYPES:
        raise ValidationError(f"Cannot vote on '{target_type}'")
    if vote_type not in VOTE_TYPES:
        raise ValidationError(f"Unknown vote type '{vote_type}'")

    key = {"u": int(user["id"]), "t": int(target_id), "tt": target_type}
    with transaction(engine) as conn:
        issue = _vote_target_issue(conn, target_type, target_id)
        _require_open(issue, "voting")

        existing = fetch_one(
            conn,
            "SELECT vote_type FROM votes WHERE user_id=:u AND target_id=:t AND target_type=:tt",
            key,
        )
        new_vote = next_vote(existing["vote_type"] if existing else None, vote_type)
        if new_vote is None:
            exec_sql(conn, "DELETE FROM votes WHERE user_id=:u AND target_id=:t AND target_type=:tt", key)
        else:
            exec_sql(
                conn,
                """
                INSERT INTO votes(user_id, target_id, target_type, vote_type, created_at)
                VALUES(:u,:t,:tt,:v,:c)
                ON CONFLICT(user_id, target_id, target_type) DO UPDATE SET vote_type = excluded.vote_type
                """,
                {**key, "v": new_vote, "c": _now()},
            )

        counts = fetch_one(
            conn,
            """
            SELECT SUM(CASE WHEN vote_type='upvote' THEN 1 ELSE 0 END) AS up,
                   SUM(CASE WHEN vote_type='downvote' THEN 1 ELSE 0 END) AS down
            FROM votes WHERE target_id=:t AND target_type=:tt
            """,
            {"t": int(target_id), "tt": target_type},
        )
        up = int(counts["up"] or 0)
        down = int(counts["down"] or 0)
        exec_sql(
            conn,
            f"UPDATE {VOTE_TABLES[target_type]} SET upvotes=:up, downvotes=:down WHERE id=:t",
            {"up": up, "down": down, "t": int(target_id)},
        )

    logger.debug("Vote on %s %s by %s -> %s (%d/%d)", target_type, target_id, user["id"], new_vote, up, down)
    return {"upvotes": up, "downvotes": down, "vote": new_vote}


USER_VOTES_SQL = text(
    "SELECT target_id, vote_type FROM votes WHERE user_id=:u AND target_type=:tt AND target_id IN :ids"
).bindparams(bindparam("ids", expanding=True))


def get_user_votes(engine: Engine, user_id: int, target_type: str, target_ids: Iterable[int]) -> Dict[int, str]:
    wanted = sorted({int(t) for t in target_ids})
    if not wanted:
        return {}
    rows = fetch_all(engine, USER_VOTES_SQL, {"u": int(user_id), "tt": target_type, "ids": wanted})
    return {int(r["target_id"]): r["vote_type"] for r in rows}
