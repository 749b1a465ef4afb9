from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Dict, List, Optional

import httpx

USER_AGENT = "analytics-jobs-worker"


class GitHubProfileFetcher:
    """Builds a profile summary from the public GitHub REST API."""

    def __init__(
        self,
        base_url: str = "https://api.github.com",
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 15.0,
    ) -> None:
        headers = {"Accept": "application/vnd.github+json", "User-Agent": USER_AGENT}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout_s)

    async def fetch_user(self, username: str) -> Dict[str, Any]:
        r = await self.client.get(f"/users/{username}")
        r.raise_for_status()
        return r.json()

    async def fetch_repos(self, username: str) -> List[Dict[str, Any]]:
        # top 100 repos, most recently updated first
        r = await self.client.get(f"/users/{username}/repos", params={"per_page": 100, "sort": "updated"})
        r.raise_for_status()
        return r.json()

    async def fetch(self, username: str) -> Dict[str, Any]:
        user, repos = await asyncio.gather(self.fetch_user(username), self.fetch_repos(username))
        return summarize_profile(user, repos)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def summarize_profile(user: Dict[str, Any], repos: List[Dict[str, Any]]) -> Dict[str, Any]:
    languages = Counter(repo["language"] for repo in repos if repo.get("language"))
    return {
        "stars": sum(int(repo.get("stargazers_count") or 0) for repo in repos),
        "forks": sum(int(repo.get("forks_count") or 0) for repo in repos),
        "followers": int(user.get("followers") or 0),
        "following": int(user.get("following") or 0),
        "public_repos": int(user.get("public_repos") or 0),
        # commit and contribution totals need the GraphQL API
        "total_commits": 0,
        "contribution_count": 0,
        "language_stats": dict(languages),
    }
