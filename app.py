import logging

import streamlit as st

from auth_service import AuthClient
from config import load_settings
from db import get_engine, is_sqlite
from errors import ForumError
from forum_store import (
    add_comment,
    audit_points,
    bootstrap_sqlite,
    cast_vote,
    create_user,
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
    verify_user,
)
from issue_images import Upload, create_issue_with_image, delete_issue_with_image, update_issue_with_image
from logging_config import setup_logging
from statafix_engine import (
    ERROR_CATEGORIES,
    ISSUE_SORTS,
    MY_ISSUE_SORTS,
    POINT_VALUES,
    IssueDraft,
    PointReason,
    format_date,
    validate_issue_draft,
    validate_new_password,
)
from storage import StorageClient

SETTINGS = load_settings()
setup_logging(SETTINGS.log_level, SETTINGS.log_dir)
logger = logging.getLogger("statafix.app")

st.set_page_config(page_title="StataFix", layout="wide")


@st.cache_resource
def _engine(db_url: str):
    engine = get_engine(db_url)
    if is_sqlite(engine):
        bootstrap_sqlite(engine)
    return engine


@st.cache_resource
def _hosted_clients(base_url: str, api_key: str, bucket: str, timeout: float):
    if not (base_url and api_key):
        logger.info("Hosted auth/storage not configured; uploads and password reset disabled.")
        return None, None
    return (
        StorageClient(base_url, api_key, bucket=bucket, timeout=timeout),
        AuthClient(base_url, api_key, timeout=timeout),
    )


ENGINE = _engine(SETTINGS.database_url)
STORAGE, AUTH = _hosted_clients(
    SETTINGS.supabase_url, SETTINGS.supabase_anon_key, SETTINGS.issue_images_bucket, SETTINGS.http_timeout
)

# =========================
# Session + navigation
# =========================
NAV_MEMBER = ["Home", "All Issues", "My Issues", "Report Error", "Leaderboard"]
NAV_GUEST = ["Home", "Login / Register", "Forgot Password"]
PROTECTED = {"All Issues", "My Issues", "Report Error", "Leaderboard", "Issue Details", "Edit Issue"}


def init_session():
    defaults = {"user": None, "page": "Home", "issue_id": None}
    for k, v in defaults.items():
        if k not in st.session_state:
            st.session_state[k] = v

    # password-reset links land on ?page=reset-password&token_hash=...
    if st.query_params.get("page") == "reset-password" and not st.session_state.get("reset_link_seen"):
        st.session_state.reset_link_seen = True
        st.session_state.page = "Reset Password"


def go(page: str, issue_id=None):
    st.session_state.page = page
    if issue_id is not None:
        st.session_state.issue_id = int(issue_id)
    st.rerun()


def flash(message: str):
    """Success message shown once, after the next rerun."""
    st.session_state.flash = message


def _on_nav():
    if st.session_state.nav:
        st.session_state.page = st.session_state.nav


def run_action(fn, *args, **kwargs):
    """Run one remote step; log + show the error instead of raising. Returns (result, ok)."""
    try:
        return fn(*args, **kwargs), True
    except ForumError as e:
        logger.warning("%s failed: %s", fn.__name__, e)
        st.error(str(e))
    except Exception as e:
        logger.exception("Unexpected error in %s", fn.__name__)
        st.error(f"Unexpected error occurred: {e}")
    return None, False


def confirm_action(label: str, key: str, prompt: str) -> bool:
    """Two-click confirmation (Streamlit has no blocking confirm dialog)."""
    flag = f"confirm_{key}"
    if st.session_state.get(flag):
        st.warning(prompt)
        c1, c2 = st.columns(2)
        if c1.button("Yes", key=f"{flag}_yes"):
            st.session_state[flag] = False
            return True
        if c2.button("Cancel", key=f"{flag}_no"):
            st.session_state[flag] = False
            st.rerun()
        return False
    if st.button(label, key=key):
        st.session_state[flag] = True
        st.rerun()
    return False


def render_sidebar(user):
    st.sidebar.header("📊 StataFix")
    if user:
        st.sidebar.caption(f"Logged in as @{user['username']}")
        st.sidebar.markdown(f"⭐ **{user['cumulative_points']} pts**")
    nav = NAV_MEMBER if user else NAV_GUEST
    # off-menu pages (details, edit, reset) leave nothing selected, so any entry is a change
    st.session_state.nav = st.session_state.page if st.session_state.page in nav else None
    st.sidebar.radio("Navigate", nav, key="nav", on_change=_on_nav)

    if user and st.sidebar.button("Logout"):
        logger.info("User %s logged out", user["username"])
        st.session_state.user = None
        go("Home")


def image_url_for(issue: dict):
    value = issue.get("image_url")
    if STORAGE:
        return STORAGE.resolve_image_url(value)
    value = str(value or "").strip()
    return value if value.lower().startswith(("http://", "https://")) else None


def display_tz() -> str:
    # browser timezone when Streamlit knows it
    return st.context.timezone or SETTINGS.display_timezone


def as_upload(uploaded):
    if not uploaded:
        return None
    return Upload(uploaded.getvalue(), uploaded.name, uploaded.type or "")


def do_delete_issue(user: dict, issue: dict):
    _, ok = run_action(delete_issue_with_image, ENGINE, STORAGE, user, issue["id"])
    if ok:
        st.session_state.issue_id = None
        go("All Issues")


# =========================
# Components
# =========================
def render_issue_card(issue: dict, user: dict):
    with st.container(border=True):
        head = f"{format_date(issue['created_at'], short=True, tz=display_tz())} · by @{issue['username']}"
        if issue["is_resolved"]:
            head += " · ✓ Resolved"
        st.caption(head)
        st.markdown(f"**{issue.get('title') or issue['command']}**")
        st.markdown(f"💻 `{issue['command']}` &nbsp; 🏷️ {issue['error_category']}")
        desc = str(issue.get("description") or "")
        st.write(desc if len(desc) <= 200 else desc[:200] + "…")
        st.caption(
            f"⬆ {int(issue.get('upvotes', 0))}  ⬇ {int(issue.get('downvotes', 0))}"
            f"  💬 {int(issue.get('comment_count', 0))}"
        )

        c1, c2, c3 = st.columns([1, 1, 4])
        if c1.button("View", key=f"view_{issue['id']}"):
            go("Issue Details", issue["id"])
        if user and int(issue["user_id"]) == int(user["id"]) and not issue["is_resolved"]:
            if c2.button("✏️ Edit", key=f"edit_{issue['id']}"):
                go("Edit Issue", issue["id"])
            with c3:
                if confirm_action("🗑️", f"del_{issue['id']}", "Are you sure you want to delete this STATA issue?"):
                    do_delete_issue(user, issue)


def render_votes(user: dict, target_type: str, target: dict, current_vote, disabled: bool):
    c1, c2, _ = st.columns([1, 1, 6])
    key = f"{target_type}_{target['id']}"
    if c1.button(f"⬆ {target['upvotes']}", key=f"up_{key}", disabled=disabled,
                 type="primary" if current_vote == "upvote" else "secondary"):
        _, ok = run_action(cast_vote, ENGINE, user, target_type, target["id"], "upvote")
        if ok:
            st.rerun()
    if c2.button(f"⬇ {target['downvotes']}", key=f"down_{key}", disabled=disabled,
                 type="primary" if current_vote == "downvote" else "secondary"):
        _, ok = run_action(cast_vote, ENGINE, user, target_type, target["id"], "downvote")
        if ok:
            st.rerun()


def issue_form(prefix: str, issue=None):
    """Shared create/edit fields. Returns (draft, uploaded_file)."""
    issue = issue or {}
    title = st.text_input("Issue Title *", value=issue.get("title") or "", key=f"{prefix}_title",
                          placeholder="Brief title describing your issue")
    command = st.text_input("STATA Command *", value=issue.get("command") or "", key=f"{prefix}_command",
                            placeholder="e.g., regress, summarize, merge")
    options = [""] + ERROR_CATEGORIES
    current = issue.get("error_category") or ""
    category = st.selectbox(
        "Error Category *",
        options,
        index=options.index(current) if current in options else 0,
        format_func=lambda c: c or "Select an error category",
        key=f"{prefix}_category",
    )
    description = st.text_area(
        "Error Description *",
        value=issue.get("description") or "",
        height=160,
        key=f"{prefix}_description",
        placeholder="Describe the error, what you were trying to do, and any error messages you received...",
    )
    image_url = st.text_input("Screenshot URL (optional)", value=issue.get("image_url") or "",
                              key=f"{prefix}_image_url", placeholder="https://example.com/screenshot.jpg")
    uploaded = None
    if STORAGE:
        uploaded = st.file_uploader("…or upload a screenshot", type=["png", "jpg", "jpeg", "gif", "webp"],
                                    key=f"{prefix}_upload")
    draft = IssueDraft(title=title, command=command, error_category=category,
                       description=description, image_url=image_url)
    return draft, uploaded


# =========================
# Pages
# =========================
def page_home(user):
    st.title("📊 StataFix")
    st.subheader("Community help for STATA errors")
    st.write(
        "Hit a cryptic STATA error? Report it, get suggested fixes from the community, "
        "and earn points for helping others."
    )
    if user:
        c1, c2 = st.columns(2)
        if c1.button("Browse issues"):
            go("All Issues")
        if c2.button("Report an error"):
            go("Report Error")
    else:
        st.info("Log in or create an account to browse and report STATA errors.")
        if st.button("Login / Register"):
            go("Login / Register")


def page_auth(user):
    st.title("StataFix")
    st.caption("Login to continue.")
    tab1, tab2 = st.tabs(["Login", "Create account"])

    with tab1:
        username = st.text_input("Username", key="login_username")
        pw = st.text_input("Password", type="password", key="login_pw")
        if st.button("Login", key="login_btn"):
            u, ok = run_action(verify_user, ENGINE, username, pw)
            if ok and u:
                logger.info("User %s logged in", u["username"])
                st.session_state.user = u
                go("All Issues")
            elif ok:
                st.error("Invalid username or password")
        if AUTH and st.button("Forgot password?", key="forgot_btn"):
            go("Forgot Password")

    with tab2:
        username = st.text_input("Username", key="reg_username")
        email = st.text_input("Email (optional, used for password reset)", key="reg_email")
        pw = st.text_input("Password", type="password", key="reg_pw")
        pw2 = st.text_input("Confirm password", type="password", key="reg_pw2")
        if st.button("Create account", key="register_btn"):
            errors = validate_new_password(pw, pw2)
            if errors:
                st.error(errors[0])
            else:
                u, ok = run_action(create_user, ENGINE, username, pw, email)
                if ok:
                    st.session_state.user = u
                    go("All Issues")


def page_forgot_password(user):
    st.title("Reset your password")
    if not AUTH:
        st.info("Password reset is not configured for this deployment.")
        return
    email = st.text_input("Email", placeholder="you@example.com", key="forgot_email")
    if st.button("Send Reset Link"):
        _, ok = run_action(AUTH.send_password_reset, email, SETTINGS.reset_redirect_url)
        if ok:
            st.success("Password reset email sent. Check your inbox.")
    if st.button("Remembered your password? Go back to login"):
        go("Login / Register")


def page_reset_password(user):
    st.title("Set New Password")
    st.caption("Choose a strong password for your account")
    if not AUTH:
        st.info("Password reset is not configured for this deployment.")
        return

    # the token is single-use; keep the session it buys us
    if "recovery" not in st.session_state:
        token_hash = st.query_params.get("token_hash")
        if not token_hash:
            st.error("Invalid or expired reset link. Please request a new one.")
            return
        recovery, ok = run_action(AUTH.verify_recovery, token_hash)
        if not ok:
            return
        st.session_state.recovery = recovery

    pw = st.text_input("New Password", type="password", key="reset_pw")
    pw2 = st.text_input("Confirm New Password", type="password", key="reset_pw2")
    if st.button("Update Password"):
        errors = validate_new_password(pw, pw2)
        if errors:
            st.error(errors[0])
            return
        recovery = st.session_state.recovery
        _, ok = run_action(AUTH.update_password, recovery["access_token"], pw)
        if not ok:
            return
        run_action(set_password_for_email, ENGINE, recovery["email"], pw)
        del st.session_state["recovery"]
        st.query_params.clear()
        flash("Password updated. Please log in.")
        go("Login / Register")


def page_all_issues(user):
    st.title("STATA Issues")
    c1, c2, c3 = st.columns([3, 2, 1])
    search = c1.text_input("Search:", placeholder="Search by command or description...", key="search")
    sort_by = c2.selectbox("Sort by:", list(ISSUE_SORTS), format_func=ISSUE_SORTS.get, index=1, key="sort_by")
    if c3.button("Refresh"):
        st.rerun()

    df, ok = run_action(list_issues, ENGINE, search, sort_by)
    if not ok:
        return
    if df.empty:
        st.info("No STATA issues found.")
        if st.button("Report Your First Error"):
            go("Report Error")
        return
    for issue in df.to_dict("records"):
        render_issue_card(issue, user)


def page_my_issues(user):
    st.title("My STATA Issues")
    sort_by = st.selectbox("Sort by:", list(MY_ISSUE_SORTS), format_func=MY_ISSUE_SORTS.get, key="my_sort_by")
    df, ok = run_action(list_user_issues, ENGINE, user["id"], sort_by)
    if not ok:
        return
    n = len(df)
    st.markdown(f"You have reported **{n}** issue{'s' if n != 1 else ''}")
    if st.button("➕ Report New Error"):
        go("Report Error")
    for issue in df.to_dict("records"):
        render_issue_card(issue, user)


def page_report_error(user):
    st.title("Report a STATA Error")
    st.caption(
        f"Encountered a STATA error? Share it here and get help from the community! "
        f"(+{POINT_VALUES[PointReason.POST_ERROR]} points)"
    )
    gen = st.session_state.get("report_gen", 0)
    draft, uploaded = issue_form(f"new_{gen}")
    if st.button("Submit Error Report"):
        errors = validate_issue_draft(draft)
        if errors:
            st.error(" ".join(errors))
            return
        issue, ok = run_action(create_issue_with_image, ENGINE, STORAGE, user, draft, as_upload(uploaded))
        if not ok:
            return
        st.session_state.report_gen = gen + 1
        flash(f"STATA issue reported! +{POINT_VALUES[PointReason.POST_ERROR]} points")
        go("Issue Details", issue["id"])


def page_issue_details(user):
    issue_id = st.session_state.issue_id
    if st.button("← Back to All Issues"):
        go("All Issues")
    if issue_id is None:
        st.error("STATA Issue not found")
        return
    issue, ok = run_action(get_issue, ENGINE, issue_id)
    if not ok:
        st.caption("This issue may have been deleted or doesn't exist.")
        return

    is_owner = int(issue["user_id"]) == int(user["id"])
    if issue["is_resolved"]:
        st.success("✓ Resolved")
    elif is_owner and st.button("Edit Issue"):
        go("Edit Issue", issue_id)

    st.title(issue.get("title") or issue["command"])
    img = image_url_for(issue)
    if img:
        st.image(img, caption="STATA error screenshot")

    st.caption(f"📅 Posted: {format_date(issue['created_at'], tz=display_tz())} · 👤 By: @{issue['username']}")
    c1, c2 = st.columns(2)
    c1.markdown("**Command:**")
    c1.code(issue["command"], language="stata")
    c2.markdown(f"**Error Category:** {issue['error_category']}")

    issue_votes, _ = run_action(get_user_votes, ENGINE, user["id"], "issue", [issue_id])
    render_votes(user, "issue", issue, (issue_votes or {}).get(int(issue_id)), disabled=issue["is_resolved"])

    st.subheader("Error Description")
    st.write(issue["description"])

    comments, ok = run_action(list_comments, ENGINE, issue_id)
    comments = comments or []
    st.subheader(f"Solutions & Suggestions ({len(comments)})")

    if not issue["is_resolved"]:
        pts = POINT_VALUES[PointReason.SUGGESTION]
        gen = st.session_state.get("comment_gen", 0)
        text = st.text_area("Suggest a solution", placeholder=f"Suggest a solution... (+{pts} points)",
                            key=f"new_comment_{issue_id}_{gen}")
        if st.button(f"Add Suggestion (+{pts} points)"):
            _, ok = run_action(add_comment, ENGINE, user, issue_id, text)
            if ok:
                # fresh key -> empty text area
                st.session_state.comment_gen = gen + 1
                st.rerun()

    if not comments:
        st.write("No suggestions yet. Be the first to help!")
        return

    comment_votes, _ = run_action(get_user_votes, ENGINE, user["id"], "comment", [c["id"] for c in comments])
    comment_votes = comment_votes or {}
    fix_pts = POINT_VALUES[PointReason.ACCEPTED_FIX]
    for c in comments:
        with st.container(border=True):
            badge = " · ✓ Verified Fix" if c["is_verified_fix"] else ""
            st.caption(f"{c['username']}{badge} · {format_date(c['created_at'], tz=display_tz())}")
            st.write(c["comment_text"])
            render_votes(user, "comment", c, comment_votes.get(int(c["id"])), disabled=issue["is_resolved"])
            if is_owner and not issue["is_resolved"] and not c["is_verified_fix"]:
                if confirm_action(f"Mark as The Fix (+{fix_pts} points to author)", f"fix_{c['id']}",
                                  "Mark this comment as the verified fix?"):
                    _, ok = run_action(mark_as_fix, ENGINE, user, issue_id, c["id"])
                    if ok:
                        flash(f"Comment marked as the verified fix! +{fix_pts} points awarded.")
                        st.rerun()


def page_edit_issue(user):
    st.title("Edit STATA Issue")
    issue, ok = run_action(get_issue, ENGINE, st.session_state.issue_id or 0)
    if not ok:
        return
    if int(issue["user_id"]) != int(user["id"]):
        st.error("You can only edit your own issues")
        if st.button("Back to All Issues"):
            go("All Issues")
        return
    if issue["is_resolved"]:
        st.info("Resolved issues can no longer be edited.")
        return

    draft, uploaded = issue_form(f"edit_{issue['id']}", issue)
    c1, c2 = st.columns(2)
    with c1:
        if st.button("✅ Update Issue"):
            errors = validate_issue_draft(draft)
            if errors:
                st.error(" ".join(errors))
                return
            _, ok = run_action(update_issue_with_image, ENGINE, STORAGE, user, issue["id"], draft,
                               as_upload(uploaded))
            if ok:
                go("Issue Details", issue["id"])
    with c2:
        if confirm_action("🗑️ Delete Issue", f"edit_del_{issue['id']}",
                          "Are you sure you want to delete this STATA issue?"):
            do_delete_issue(user, issue)


def page_leaderboard(user):
    st.title("🏆 Leaderboard")
    st.caption("Top contributors helping solve STATA errors")
    st.markdown(
        f"- 📝 Post an error: +{POINT_VALUES[PointReason.POST_ERROR]} points\n"
        f"- 💡 Suggest a solution: +{POINT_VALUES[PointReason.SUGGESTION]} points\n"
        f"- ✓ Solution accepted as fix: +{POINT_VALUES[PointReason.ACCEPTED_FIX]} points"
    )
    board, ok = run_action(leaderboard, ENGINE)
    if ok:
        if board.empty:
            st.info("No users yet. Be the first to contribute!")
        else:
            st.dataframe(
                board[["rank", "username", "cumulative_points"]].rename(
                    columns={"rank": "Rank", "username": "Username", "cumulative_points": "Total Points"}
                ),
                hide_index=True,
            )

    with st.expander("Your point history"):
        history, ok = run_action(point_history, ENGINE, user["id"])
        if ok:
            if history.empty:
                st.write("No points yet.")
            else:
                history["created_at"] = history["created_at"].map(lambda v: format_date(v, tz=display_tz()))
                st.dataframe(history, hide_index=True)

    with st.expander("Ledger check"):
        drift, ok = run_action(audit_points, ENGINE)
        if ok:
            if drift.empty:
                st.success("Every profile's points match the point ledger.")
            else:
                st.warning(f"{len(drift)} profile(s) disagree with the point ledger.")
                st.dataframe(drift, hide_index=True)
                if st.button("Repair from ledger"):
                    n, ok = run_action(repair_points, ENGINE)
                    if ok:
                        st.success(f"Repaired {n} profile(s).")
                        st.rerun()


def page_not_found(user):
    st.title("Page not found")
    if st.button("Go Home"):
        go("Home")


PAGES = {
    "Home": page_home,
    "Login / Register": page_auth,
    "Forgot Password": page_forgot_password,
    "Reset Password": page_reset_password,
    "All Issues": page_all_issues,
    "My Issues": page_my_issues,
    "Report Error": page_report_error,
    "Issue Details": page_issue_details,
    "Edit Issue": page_edit_issue,
    "Leaderboard": page_leaderboard,
}

# =========================
# UI
# =========================
init_session()
user = st.session_state.user
if user:
    user, _ = run_action(refresh_user_points, ENGINE, user)
    user = user or st.session_state.user
    st.session_state.user = user

render_sidebar(user)

if st.session_state.get("flash"):
    st.success(st.session_state.pop("flash"))

page = st.session_state.page
if page in PROTECTED and not user:
    st.warning("Please log in to continue.")
    page = "Login / Register"
PAGES.get(page, page_not_found)(user)
