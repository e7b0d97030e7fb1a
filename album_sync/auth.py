"""Credential files and the OAuth 1.0a out-of-band authorization flow."""

from __future__ import annotations

import json
import logging
import os
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import requests
from requests_oauthlib import OAuth1Session

from album_sync.errors import CredentialsError, NetworkError

logger = logging.getLogger(__name__)

OAUTH_ORIGIN = "https://secure.smugmug.com"
OAUTH_REQUEST_TOKEN = OAUTH_ORIGIN + "/services/oauth/1.0a/getRequestToken"
OAUTH_AUTHORIZE = OAUTH_ORIGIN + "/services/oauth/1.0a/authorize"
OAUTH_ACCESS_TOKEN = OAUTH_ORIGIN + "/services/oauth/1.0a/getAccessToken"


@dataclass(frozen=True)
class Credentials:
    """A token/secret pair: either the API key or the user's access token."""

    token: str
    secret: str

    def to_json(self) -> str:
        return json.dumps({"Token": self.token, "Secret": self.secret}, indent=4)


def load_credentials(path: Path) -> Credentials:
    try:
        with open(path) as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise CredentialsError(f"{path} not found") from exc
    except (OSError, ValueError) as exc:
        raise CredentialsError(f"Error reading {path}: {exc}") from exc
    try:
        return Credentials(token=data["Token"], secret=data["Secret"])
    except (KeyError, TypeError) as exc:
        raise CredentialsError(f"{path} does not contain a Token and Secret") from exc


def store_credentials(creds: Credentials, path: Path) -> None:
    """Write *creds* to *path* readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(creds.to_json())


def authorize(
    api_key: Credentials,
    prompt_verifier: Callable[[str], str],
    open_browser: bool = True,
    request_token_url: str = OAUTH_REQUEST_TOKEN,
    authorize_url: str = OAUTH_AUTHORIZE,
    access_token_url: str = OAUTH_ACCESS_TOKEN,
) -> Credentials:
    """Run the out-of-band flow and return the user's access token.

    *prompt_verifier* receives the authorization URL and returns the
    verification code the user copied from the browser.
    """
    session = OAuth1Session(api_key.token, client_secret=api_key.secret, callback_uri="oob")
    try:
        temp = session.fetch_request_token(request_token_url)
    except (requests.RequestException, ValueError) as exc:
        raise NetworkError(f"Error getting temporary credentials: {exc}") from exc

    url = session.authorization_url(authorize_url, Access="Full", Permissions="Modify")
    if open_browser:
        logger.info("Opening browser with %s", url)
        webbrowser.open(url)
    verifier = prompt_verifier(url).strip()

    session = OAuth1Session(
        api_key.token,
        client_secret=api_key.secret,
        resource_owner_key=temp["oauth_token"],
        resource_owner_secret=temp["oauth_token_secret"],
        verifier=verifier,
    )
    try:
        access = session.fetch_access_token(access_token_url)
    except (requests.RequestException, ValueError) as exc:
        raise NetworkError(f"Error getting access token: {exc}") from exc
    return Credentials(token=access["oauth_token"], secret=access["oauth_token_secret"])
