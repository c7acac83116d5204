"""Repository URL and author email helpers."""
import re
from typing import Optional
from urllib.parse import urlparse

GITHUB_URL_PATTERN = re.compile(
    r"^(https://|git@)github\.com[:/][\w.-]+/[\w.-]+?(\.git)?/?$",
    re.IGNORECASE,
)
NOREPLY_DOMAIN = "@users.noreply.github.com"


def is_valid_github_url(url: str) -> bool:
    """Accepts HTTPS and SSH GitHub URLs, with or without ``.git`` / trailing slash."""
    return bool(GITHUB_URL_PATTERN.match(url.strip()))


def normalize_repo_url(url: str) -> str:
    """Normalize a repository URL to lowercase ``https://host/owner/name``.

    SSH URLs (``git@host:owner/name.git``) are converted to HTTPS; the
    ``.git`` suffix and trailing slashes are dropped.
    """
    url = url.strip()
    ssh = re.match(r"^git@(.*?):(.*)$", url)
    if ssh:
        host, path = ssh.groups()
    else:
        parsed = urlparse(url)
        host, path = parsed.netloc, parsed.path
    path = path.strip("/")
    if path.endswith(".git"):
        path = path[:-len(".git")]
    return f"https://{host}/{path}".rstrip("/").lower()


def repository_path_name(normalized_url: str) -> str:
    """Relative storage path for a normalized URL, e.g. ``github.com/owner/name``."""
    parsed = urlparse(normalized_url)
    return f"{parsed.netloc}/{parsed.path.strip('/')}"


def split_owner_name(normalized_url: str) -> tuple:
    owner, name = urlparse(normalized_url).path.strip("/").split("/")[-2:]
    return owner, name


def normalize_email(email: str) -> str:
    return email.strip().lower()


def noreply_username(email: str) -> Optional[str]:
    """GitHub login embedded in a noreply address, if any.

    Handles both ``12345+login@users.noreply.github.com`` and the older
    ``login@users.noreply.github.com`` forms.
    """
    if not email.endswith(NOREPLY_DOMAIN):
        return None
    local = email[: -len(NOREPLY_DOMAIN)]
    username = local.split("+", 1)[1] if "+" in local else local
    return username or None
