"""
Find the newest released image tag for an image repository.

  ghcr.io/<owner>/<package>  -> GitHub Packages API (token), falling back to
                                the anonymous GHCR registry tag list on 401/403
  <owner>/<repo>             -> GitHub repository tags

"latest", "sha-*" and anything that is not a version tag are ignored.
"""

import functools
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

from image_tags import compare_version_tags, is_version_tag, normalize_tag

GITHUB_API = "https://api.github.com"
GHCR_REGISTRY = "https://ghcr.io"
USER_AGENT = "openclaw-panel"
HTTP_TIMEOUT = 15.0


class ReleaseLookupError(Exception):
    """No usable release information could be found."""


@dataclass
class ReleaseSource:
    kind: str  # "ghcr" or "github"
    owner: str
    name: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"


def resolve_release_source(image_repo: str) -> Optional[ReleaseSource]:
    """Map an image repository string to where its versions are published."""
    raw = (image_repo or "").strip()
    for prefix in ("https://", "http://"):
        if raw.startswith(prefix):
            raw = raw[len(prefix):]
    parts = [p.strip() for p in raw.split("/") if p.strip()]
    if not parts:
        return None

    if len(parts) >= 3 and parts[0].lower() == "ghcr.io":
        return ReleaseSource("ghcr", parts[1], "/".join(parts[2:]))

    # owner/repo without a registry host
    if len(parts) == 2 and "." not in parts[0] and ":" not in parts[0]:
        return ReleaseSource("github", parts[0], parts[1])

    return None


def filter_version_tags(tags) -> list[str]:
    """Drop pseudo-tags and anything that is not a version; normalized, de-duplicated."""
    result = []
    seen = set()
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        tag = tag.strip()
        if not tag or tag == "latest" or tag.startswith("sha-"):
            continue
        if not is_version_tag(tag):
            continue
        normalized = normalize_tag(tag)
        if normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


def pick_latest_tag(tags) -> str:
    """Highest version among tags, '' when there is none."""
    candidates = filter_version_tags(tags)
    if not candidates:
        return ""
    return max(candidates, key=functools.cmp_to_key(compare_version_tags))


def _github_headers(github_token: str = "") -> dict:
    headers = {
        "accept": "application/vnd.github+json",
        "user-agent": USER_AGENT,
    }
    if github_token:
        headers["authorization"] = f"Bearer {github_token}"
    return headers


async def fetch_ghcr_tags_anonymous(client: httpx.AsyncClient, owner: str, package: str) -> list[str]:
    """Anonymous pull token + registry tag list. Works for public packages."""
    repository = f"{owner}/{package}".lower()
    token_resp = await client.get(
        f"{GHCR_REGISTRY}/token",
        params={"scope": f"repository:{repository}:pull", "service": "ghcr.io"},
        headers={"user-agent": USER_AGENT},
    )
    if token_resp.status_code != 200:
        raise ReleaseLookupError(f"GHCR token request failed: {token_resp.status_code}")
    registry_token = token_resp.json().get("token") or ""
    if not registry_token:
        raise ReleaseLookupError("GHCR token response did not contain a token")

    tags_resp = await client.get(
        f"{GHCR_REGISTRY}/v2/{repository}/tags/list",
        params={"n": 1000},
        headers={"authorization": f"Bearer {registry_token}", "user-agent": USER_AGENT},
    )
    if tags_resp.status_code != 200:
        raise ReleaseLookupError(f"GHCR tag list request failed: {tags_resp.status_code}")
    return list(tags_resp.json().get("tags") or [])


async def fetch_ghcr_tags(
    client: httpx.AsyncClient,
    owner: str,
    package: str,
    github_token: str = "",
) -> list[str]:
    """
    Tags of a GHCR container package.

    Tries the org and then the user Packages API endpoint. When GitHub
    answers 401/403 (no or insufficient token) the anonymous registry flow
    is used instead.
    """
    encoded = quote(package, safe="")
    headers = _github_headers(github_token)
    last_status = 0
    for scope in ("orgs", "users"):
        resp = await client.get(
            f"{GITHUB_API}/{scope}/{owner}/packages/container/{encoded}/versions",
            params={"per_page": 100},
            headers=headers,
        )
        last_status = resp.status_code
        if resp.status_code in (401, 403):
            print(f"[release-discovery] Packages API returned {resp.status_code} for {owner}/{package}, "
                  f"falling back to anonymous registry lookup")
            return await fetch_ghcr_tags_anonymous(client, owner, package)
        if resp.status_code == 404:
            continue
        if resp.status_code != 200:
            break
        tags = []
        for version in resp.json() or []:
            container = ((version or {}).get("metadata") or {}).get("container") or {}
            tags.extend(container.get("tags") or [])
        return tags
    raise ReleaseLookupError(f"GitHub Packages API request failed: {last_status}")


async def fetch_github_tags(
    client: httpx.AsyncClient,
    owner: str,
    repo: str,
    github_token: str = "",
) -> list[str]:
    resp = await client.get(
        f"{GITHUB_API}/repos/{owner}/{repo}/tags",
        params={"per_page": 100},
        headers=_github_headers(github_token),
    )
    if resp.status_code != 200:
        raise ReleaseLookupError(f"GitHub API request failed: {resp.status_code}")
    return [item.get("name", "") for item in resp.json() or [] if isinstance(item, dict)]


async def fetch_latest_release(
    image_repo: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    github_token: str = "",
) -> dict:
    """
    Return {"release_repo", "source", "tag"} for the newest version.

    Raises ReleaseLookupError when the repository cannot be mapped, the APIs
    fail, or no version tag exists.
    """
    source = resolve_release_source(image_repo)
    if source is None:
        raise ReleaseLookupError(f"Cannot derive a release source from image repository: {image_repo}")

    if client is None:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as owned_client:
            return await fetch_latest_release(image_repo, client=owned_client, github_token=github_token)

    try:
        if source.kind == "ghcr":
            tags = await fetch_ghcr_tags(client, source.owner, source.name, github_token)
        else:
            tags = await fetch_github_tags(client, source.owner, source.name, github_token)
    except httpx.HTTPError as e:
        raise ReleaseLookupError(f"Release lookup failed for {source.slug}: {e}") from e

    latest = pick_latest_tag(tags)
    if not latest:
        raise ReleaseLookupError(f"No version tags found for {source.slug}")
    return {
        "release_repo": source.slug,
        "source": source.kind,
        "tag": latest,
    }
