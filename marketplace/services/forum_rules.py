"""Pure forum invariants: reply depth, poll window, option bounds, vote rules.

Nothing here touches the database, so every rule can be checked in isolation.
"""

from datetime import datetime, timedelta

from marketplace.exceptions import DomainRuleError

MAX_REPLY_DEPTH = 3

POLL_MIN_OPTIONS = 2
POLL_MAX_OPTIONS = 6
POLL_OPTION_MAX_CHARS = 100
POLL_DEFAULT_DAYS = 3
POLL_MIN_DAYS = 1
POLL_MAX_DAYS = 5


def is_poll_closed(poll_closed: bool, closes_at: datetime | None, now: datetime) -> bool:
    """A poll is closed once explicitly closed or strictly after its closing time."""
    if poll_closed:
        return True
    return closes_at is not None and now > closes_at


def poll_closes_at(now: datetime, duration_days: int | None) -> datetime:
    """Closing time for a new poll; the duration is clamped to 1..5 days."""
    days = POLL_DEFAULT_DAYS if duration_days is None else duration_days
    days = max(POLL_MIN_DAYS, min(POLL_MAX_DAYS, days))
    return now + timedelta(days=days)


def validate_poll_options(options: list[str]) -> list[str]:
    """Return trimmed options or raise when the count or any option is out of bounds."""
    if not POLL_MIN_OPTIONS <= len(options) <= POLL_MAX_OPTIONS:
        raise DomainRuleError(
            f"Polls need {POLL_MIN_OPTIONS}-{POLL_MAX_OPTIONS} options", "invalid_poll"
        )
    cleaned = []
    for option in options:
        if not isinstance(option, str) or not option.strip():
            raise DomainRuleError("Poll options must be non-empty strings", "invalid_poll")
        option = option.strip()
        if len(option) > POLL_OPTION_MAX_CHARS:
            raise DomainRuleError(
                f"Poll options must be at most {POLL_OPTION_MAX_CHARS} characters",
                "invalid_poll",
            )
        cleaned.append(option)
    return cleaned


def reply_depth(parent_depth: int, max_depth: int = MAX_REPLY_DEPTH) -> int:
    """Depth of a reply to a post at ``parent_depth``; rejects anything past the ceiling."""
    depth = parent_depth + 1
    if depth > min(max_depth, MAX_REPLY_DEPTH):
        raise DomainRuleError("Maximum reply depth exceeded", "depth_exceeded")
    return depth


def check_not_self_vote(author_id: str, voter_id: str, target: str = "post") -> None:
    if author_id == voter_id:
        raise DomainRuleError(f"Cannot vote on your own {target}", "self_vote")


def check_option_index(option_index: int, options: list[str]) -> None:
    if not 0 <= option_index < len(options):
        raise DomainRuleError("Invalid option_index", "invalid_option")


def check_text_bounds(title: str | None, body: str, title_max: int, body_max: int) -> None:
    if title is not None and len(title) > title_max:
        raise DomainRuleError(f"Title must be at most {title_max} characters", "title_too_long")
    if len(body) > body_max:
        raise DomainRuleError(f"Body must be at most {body_max} characters", "body_too_long")


def tally_poll(options: list[str], option_indexes: list[int]) -> list[int]:
    """Votes per option; indexes outside the option list are ignored."""
    results = [0] * len(options)
    for idx in option_indexes:
        if 0 <= idx < len(results):
            results[idx] += 1
    return results
