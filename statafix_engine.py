from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional

import pandas as pd


ERROR_CATEGORIES = [
    "Syntax Error",
    "Data Error",
    "Variable Not Found",
    "Type Mismatch",
    "Memory Error",
    "File I/O Error",
    "Logic Error",
    "Other",
]


class PointReason(str, Enum):
    POST_ERROR = "POST_ERROR"
    SUGGESTION = "SUGGESTION"
    ACCEPTED_FIX = "ACCEPTED_FIX"


POINT_VALUES: Dict[PointReason, int] = {
    PointReason.POST_ERROR: 5,
    PointReason.SUGGESTION: 3,
    PointReason.ACCEPTED_FIX: 5,
}

VOTE_TYPES = ("upvote", "downvote")
TARGET_TYPES = ("issue", "comment")

# sort key -> label shown in the UI
ISSUE_SORTS = {
    "hot": "🔥 Hot (Most Active)",
    "created_at": "📅 Newest First",
    "upvotes_desc": "⬆ Most Upvotes",
    "upvotes_asc": "⬇ Least Upvotes",
    "is_resolved": "❓ Unsolved First",
}

MY_ISSUE_SORTS = {
    "newest": "Newest First",
    "oldest": "Oldest First",
    "resolved": "Resolved First",
    "unresolved": "Unresolved First",
}

MIN_PASSWORD_LENGTH = 6
LEADERBOARD_LIMIT = 50
HOT_COMMENT_WEIGHT = 2

ISSUE_COLUMNS = [
    "id", "user_id", "username", "title", "command", "error_category", "description",
    "image_url", "is_resolved", "upvotes", "downvotes", "created_at", "comment_count",
]


@dataclass
class IssueDraft:
    title: str
    command: str
    error_category: str
    description: str
    image_url: str = ""

    def cleaned(self) -> "IssueDraft":
        return replace(
            self,
            title=safe_str(self.title),
            command=safe_str(self.command),
            error_category=safe_str(self.error_category),
            description=safe_str(self.description),
            image_url=safe_str(self.image_url),
        )


def safe_str(x) -> str:
    if x is None:
        return ""
    try:
        if pd.isna(x):
            return ""
    except (TypeError, ValueError):
        pass
    return str(x).strip()


def validate_issue_draft(draft: IssueDraft) -> List[str]:
    d = draft.cleaned()
    errors: List[str] = []
    if not d.title or not d.command or not d.error_category or not d.description:
        errors.append("Please fill in all required fields!")
    if d.error_category and d.error_category not in ERROR_CATEGORIES:
        errors.append(f"Unknown error category '{d.error_category}'.")
    return errors


def validate_new_password(password: str, confirm: str) -> List[str]:
    if not password or not confirm:
        return ["Please fill in all fields"]
    if len(password) < MIN_PASSWORD_LENGTH:
        return [f"Password must be at least {MIN_PASSWORD_LENGTH} characters"]
    if password != confirm:
        return ["Passwords do not match"]
    return []


# =========================
# Issue lists
# =========================
def issues_to_frame(rows: Iterable) -> pd.DataFrame:
    df = pd.DataFrame([dict(r) for r in rows])
    for col in ISSUE_COLUMNS:
        if col not in df.columns:
            df[col] = pd.Series(dtype=object)
    if df.empty:
        return df[ISSUE_COLUMNS]

    for col in ["upvotes", "downvotes", "comment_count"]:
        df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0).astype(int)
    df["is_resolved"] = df["is_resolved"].fillna(False).astype(bool)
    df["created_at"] = pd.to_datetime(df["created_at"], errors="coerce", utc=True)
    return df


def filter_issues(df: pd.DataFrame, term: str) -> pd.DataFrame:
    """Case-insensitive substring match on command, description and title."""
    term = safe_str(term).lower()
    if df.empty or not term:
        return df
    mask = pd.Series(False, index=df.index)
    for col in ["command", "description", "title"]:
        mask |= df[col].fillna("").astype(str).str.lower().str.contains(term, regex=False)
    return df.loc[mask]


def add_hot_score(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    if out.empty:
        out["hot_score"] = pd.Series(dtype=int)
        return out
    out["hot_score"] = out["upvotes"] - out["downvotes"] + out["comment_count"] * HOT_COMMENT_WEIGHT
    return out


def sort_issues(df: pd.DataFrame, sort_by: str) -> pd.DataFrame:
    if sort_by == "hot":
        out = add_hot_score(df)
        return out.sort_values(["hot_score", "created_at"], ascending=[False, False], kind="mergesort")
    if df.empty:
        return df
    if sort_by == "is_resolved":
        return df.sort_values(["is_resolved", "created_at"], ascending=[True, False], kind="mergesort")
    if sort_by == "upvotes_desc":
        return df.sort_values(["upvotes", "created_at"], ascending=[False, False], kind="mergesort")
    if sort_by == "upvotes_asc":
        return df.sort_values(["upvotes", "created_at"], ascending=[True, False], kind="mergesort")
    return df.sort_values("created_at", ascending=False, kind="mergesort")


def sort_my_issues(df: pd.DataFrame, sort_by: str) -> pd.DataFrame:
    if df.empty:
        return df
    if sort_by == "oldest":
        return df.sort_values("created_at", ascending=True, kind="mergesort")
    if sort_by == "resolved":
        return df.sort_values(["is_resolved", "created_at"], ascending=[False, False], kind="mergesort")
    if sort_by == "unresolved":
        return df.sort_values(["is_resolved", "created_at"], ascending=[True, False], kind="mergesort")
    return df.sort_values("created_at", ascending=False, kind="mergesort")


# =========================
# Votes
# =========================
def next_vote(existing: Optional[str], requested: str) -> Optional[str]:
    """
    Same vote again -> vote removed (None).
    Different or no previous vote -> requested vote.
    """
    if requested not in VOTE_TYPES:
        raise ValueError(f"vote_type must be one of {VOTE_TYPES}, got {requested!r}")
    if existing == requested:
        return None
    return requested


# =========================
# Leaderboard + ledger
# =========================
def rank_label(index: int) -> str:
    medals = {0: "🥇", 1: "🥈", 2: "🥉"}
    return medals.get(index, f"#{index + 1}")


def rank_leaderboard(rows: Iterable) -> pd.DataFrame:
    df = pd.DataFrame([dict(r) for r in rows])
    if df.empty:
        return pd.DataFrame(columns=["rank", "username", "cumulative_points"])
    df["cumulative_points"] = pd.to_numeric(df["cumulative_points"], errors="coerce").fillna(0).astype(int)
    df = df.sort_values("cumulative_points", ascending=False, kind="mergesort").reset_index(drop=True)
    df["rank"] = [rank_label(i) for i in range(len(df))]
    return df[["rank", "username", "cumulative_points"] + [c for c in df.columns if c not in ("rank", "username", "cumulative_points")]]


def reconcile_points(profiles: Iterable, ledger_totals: Iterable) -> pd.DataFrame:
    """
    profiles: rows with id, username, cumulative_points
    ledger_totals: rows with user_id, ledger_points
    Returns only profiles whose aggregate disagrees with their ledger sum.
    """
    cols = ["id", "username", "cumulative_points", "ledger_points", "drift"]
    p = pd.DataFrame([dict(r) for r in profiles])
    if p.empty:
        return pd.DataFrame(columns=cols)
    led = pd.DataFrame([dict(r) for r in ledger_totals])
    if led.empty:
        led = pd.DataFrame(columns=["user_id", "ledger_points"])

    merged = p.merge(led, how="left", left_on="id", right_on="user_id")
    merged["cumulative_points"] = pd.to_numeric(merged["cumulative_points"], errors="coerce").fillna(0).astype(int)
    merged["ledger_points"] = pd.to_numeric(merged["ledger_points"], errors="coerce").fillna(0).astype(int)
    merged["drift"] = merged["cumulative_points"] - merged["ledger_points"]
    return merged.loc[merged["drift"] != 0, cols].reset_index(drop=True)


def format_date(value, short: bool = False, tz: str = "UTC") -> str:
    """'January 5, 2025, 03:04 PM' (or 'Jan 5, 2025, 03:04 PM' when short), in `tz`.

    Naive timestamps are taken as UTC, which is how the store writes them.
    """
    ts = pd.to_datetime(value, errors="coerce", utc=True)
    if ts is None or pd.isna(ts):
        return ""
    ts = ts.tz_convert(tz or "UTC")
    month = ts.strftime("%b" if short else "%B")
    return f"{month} {ts.day}, {ts.year}, {ts.strftime('%I:%M %p')}"
