"""Remote repository lookup and creation through the GitHub / GitLab REST APIs."""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from ..config.settings import GitProvider, ProxyConfig, RepoVisibility
from ..exceptions import (
    AuthenticationError,
    GenericOperationError,
    NetworkError,
    NetworkFailureKind,
    RepositoryNotFoundError,
)

logger = logging.getLogger(__name__)

API_TIMEOUT = 30  # seconds
USER_AGENT = "Personal-OKR-Manager"

API_BASE_URLS: Dict[GitProvider, str] = {
    GitProvider.GITHUB: "https://api.github.com",
    GitProvider.GITLAB: "https://gitlab.com/api/v4",
}


class RepositoryProvisioner:
    """Finds or creates the data repository for a token's account."""

    def __init__(
        self,
        provider: GitProvider,
        token: str,
        proxy: Optional[ProxyConfig] = None,
        session: Optional[requests.Session] = None
    ):
        """Initialize provisioner.

        Args:
            provider: Hosting provider
            token: Personal access token
            proxy: Optional outbound proxy
            session: requests session (a new one is created if omitted)
        """
        self.provider = GitProvider(provider)
        self.token = token
        self.proxies = proxy.as_requests_proxies() if proxy else None
        self.session = session or requests.Session()
        self.base_url = API_BASE_URLS[self.provider]

    def _headers(self) -> Dict[str, str]:
        if self.provider is GitProvider.GITHUB:
            return {
                'Authorization': f'token {self.token}',
                'User-Agent': USER_AGENT,
                'Accept': 'application/vnd.github+json',
            }
        return {'Authorization': f'Bearer {self.token}', 'User-Agent': USER_AGENT}

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(
                method,
                url,
                headers=self._headers(),
                proxies=self.proxies,
                timeout=API_TIMEOUT,
                **kwargs
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"{self.provider.value} API request timed out",
                               kind=NetworkFailureKind.TIMEOUT) from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"{self.provider.value} API request failed: {type(e).__name__}",
                               kind=NetworkFailureKind.UNREACHABLE) from e

    def _raise_for_status(self, response: requests.Response, action: str) -> None:
        if response.status_code in (401, 403):
            raise AuthenticationError(f"{self.provider.value} rejected the token while trying to {action}",
                                      status=response.status_code)
        if response.status_code == 404:
            raise RepositoryNotFoundError(f"{self.provider.value} repository not found", status=404)
        raise GenericOperationError(
            f"{self.provider.value} API error: {_error_message(response)}",
            operation=action,
            status=response.status_code,
        )

    def find_repository(self, name: str) -> Optional[str]:
        """Look up a repository owned by the token's account.

        Args:
            name: Repository name

        Returns:
            Clone URL of the existing repository, or None
        """
        if self.provider is GitProvider.GITHUB:
            url = f"{self.base_url}/user/repos?visibility=all&affiliation=owner&per_page=100"
            url_field = 'clone_url'
        else:
            url = f"{self.base_url}/projects?owned=true&search={quote(name, safe='')}&per_page=100"
            url_field = 'http_url_to_repo'

        while url:
            response = self._request('GET', url)
            if response.status_code != 200:
                self._raise_for_status(response, 'list repositories')

            repos: List[Dict[str, Any]] = response.json()
            logger.debug(f"{self.provider.value} returned {len(repos)} repositories")
            for repo in repos:
                # names are case-insensitive on both providers
                if (repo.get('name') or '').casefold() == name.casefold():
                    logger.info(f"Found existing repository {name}")
                    return repo.get(url_field)

            url = (response.links or {}).get('next', {}).get('url')

        return None

    def create_repository(
        self,
        name: str,
        description: str = "",
        visibility: RepoVisibility = RepoVisibility.PRIVATE
    ) -> str:
        """Create a repository with an initial commit.

        Returns:
            Clone URL of the new repository
        """
        is_private = RepoVisibility(visibility) is RepoVisibility.PRIVATE
        if self.provider is GitProvider.GITHUB:
            url = f"{self.base_url}/user/repos"
            payload = {'name': name, 'description': description, 'private': is_private, 'auto_init': True}
            url_field = 'clone_url'
        else:
            url = f"{self.base_url}/projects"
            payload = {
                'name': name,
                'description': description,
                'visibility': 'private' if is_private else 'public',
                'initialize_with_readme': True,
            }
            url_field = 'http_url_to_repo'

        response = self._request('POST', url, json=payload)
        if response.status_code != 201:
            self._raise_for_status(response, 'create repository')

        clone_url = response.json().get(url_field)
        logger.info(f"Created {self.provider.value} repository {name}")
        return clone_url

    def ensure_repository(
        self,
        name: str,
        description: str = "",
        visibility: RepoVisibility = RepoVisibility.PRIVATE
    ) -> str:
        """Return the clone URL of ``name``, creating the repository only if it does not exist."""
        existing = self.find_repository(name)
        if existing:
            return existing
        return self.create_repository(name, description, visibility)

    def get_repository(self, owner: str, repo: str) -> Dict[str, Any]:
        """Fetch one repository's details.

        Raises:
            AuthenticationError: Token rejected
            RepositoryNotFoundError: Repository missing or not visible to the token
        """
        if self.provider is GitProvider.GITHUB:
            url = f"{self.base_url}/repos/{owner}/{repo}"
        else:
            url = f"{self.base_url}/projects/{quote(f'{owner}/{repo}', safe='')}"

        response = self._request('GET', url)
        if response.status_code != 200:
            self._raise_for_status(response, 'get repository')
        return response.json()


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"status {response.status_code}"
    if isinstance(body, dict) and body.get('message'):
        return str(body['message'])
    return f"status {response.status_code}"
