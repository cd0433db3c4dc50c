"""Pre-publish checks of token, repository access and API quota."""

import logging
from dataclasses import dataclass

from streetsurvey.errors import PermanentItemError, RemoteError, ValidationError
from streetsurvey.sync.github import GitHubContentsClient, RateLimitStatus

logger = logging.getLogger(__name__)


@dataclass
class AccessReport:
    """What validation learned about the target repository."""

    login: str
    rate_limit: RateLimitStatus


async def validate_access(
    client: GitHubContentsClient,
    min_remaining: int = 100,
) -> AccessReport:
    """Check that a publish job can write to the target repository.

    All checks run even when an earlier one fails, so the error lists
    every problem at once. Only read requests are issued.

    Args:
        client: Client bound to the job's credentials
        min_remaining: Lowest acceptable remaining API quota

    Returns:
        AccessReport for the authenticated user

    Raises:
        ValidationError: With one reason per failed check
    """
    credentials = client.credentials
    reasons = []

    if not credentials.token:
        reasons.append("GitHub token is not configured")
    if not credentials.repo:
        reasons.append("Target repository is not configured")
    if reasons:
        raise ValidationError(reasons)

    login = ""
    try:
        user = await client.get_authenticated_user()
        login = user.get("login", "")
    except PermanentItemError:
        reasons.append("Invalid GitHub token")
    except RemoteError as e:
        reasons.append(f"Could not verify token: {e}")

    try:
        repo = await client.get_repository()
        if not repo.get("permissions", {}).get("push"):
            reasons.append(f"No write access to repository {credentials.repo}")
    except PermanentItemError:
        reasons.append(f"Repository {credentials.repo} not found or not accessible")
    except RemoteError as e:
        reasons.append(f"Could not verify repository: {e}")

    rate_limit = None
    try:
        rate_limit = await client.get_rate_limit()
        if rate_limit.remaining < min_remaining:
            resets = (
                rate_limit.reset_at.strftime("%H:%M:%S UTC") if rate_limit.reset_at else "unknown"
            )
            reasons.append(
                f"API rate limit too low: {rate_limit.remaining} requests remaining, "
                f"resets at {resets}"
            )
    except RemoteError as e:
        reasons.append(f"Could not check API rate limit: {e}")

    if reasons:
        logger.warning("Publish validation failed: repo=%s, reasons=%s", credentials.repo, reasons)
        raise ValidationError(reasons)

    logger.info(
        "Publish validation passed: repo=%s, user=%s, remaining=%d",
        credentials.repo, login, rate_limit.remaining,
    )
    return AccessReport(login=login, rate_limit=rate_limit)
