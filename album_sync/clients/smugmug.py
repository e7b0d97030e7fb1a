"""SmugMug client – OAuth 1.0a signed transport, listing decoders, page fetchers and uploads."""

from __future__ import annotations

import json
import logging
import mimetypes
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import requests
from requests_oauthlib import OAuth1

from album_sync.auth import Credentials
from album_sync.config import API_ROOT, UPLOAD_URI
from album_sync.errors import DecodeError, FileReadError, NetworkError, UploadRejectedError
from album_sync.hasher import ContentFingerprint
from album_sync.pagination import Page, PageFetcher

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEARCH_PAGE_SIZE = 15

_BASE_PARAMS = {"_accept": "application/json", "_verbosity": "1"}


# ── remote items ────────────────────────────────────────────────────


@dataclass(frozen=True)
class Album:
    key: str
    name: str

    @classmethod
    def from_json(cls, data: dict) -> "Album":
        return cls(key=data.get("AlbumKey", ""), name=data.get("Name", ""))


@dataclass(frozen=True)
class RemoteImage:
    filename: str
    md5: str
    size: int | None = None

    @classmethod
    def from_json(cls, data: dict) -> "RemoteImage":
        size = data.get("ArchivedSize")
        return cls(
            filename=data.get("FileName", ""),
            md5=(data.get("ArchivedMD5") or "").lower(),
            size=int(size) if size not in (None, "") else None,
        )


# ── decoding ────────────────────────────────────────────────────────


def _decode_json(body: bytes, what: str) -> Any:
    try:
        return json.loads(body)
    except ValueError as exc:
        raise DecodeError(f"Decoding {what} JSON: {exc}") from exc


def decode_page(
    body: bytes,
    item_key: str,
    item_factory: Callable[[dict], T],
    start: int = 1,
) -> Page[T]:
    """Turn a listing response into a Page; an absent item array is an empty page.

    Responses without a ``Pages`` block describe only the items they carry.
    """
    data = _decode_json(body, item_key)
    response = data.get("Response") if isinstance(data, dict) else None
    if not isinstance(response, dict):
        raise DecodeError(f"No Response object in {item_key} listing")

    raw_items = response.get(item_key) or []
    if not isinstance(raw_items, list):
        raise DecodeError(f"{item_key} in listing is not an array")
    try:
        items = [item_factory(raw) for raw in raw_items]
    except (AttributeError, TypeError, ValueError) as exc:
        raise DecodeError(f"Malformed {item_key} entry: {exc}") from exc

    pages = response.get("Pages")
    if not isinstance(pages, dict):
        return Page.of(items, total_count=start - 1 + len(items), start_index=start)
    try:
        return Page(
            items=tuple(items),
            total_count=int(pages.get("Total", len(items))),
            start_index=int(pages.get("Start", start)),
            returned_count=int(pages.get("Count", len(items))),
        )
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"Malformed Pages block: {exc}") from exc


def decode_upload_ack(status: int, body: bytes) -> None:
    """Return on an explicit ``stat: ok``; raise UploadRejectedError or DecodeError otherwise."""
    data = _decode_json(body, "upload response")
    if not isinstance(data, dict):
        raise DecodeError("Upload response is not a JSON object")
    stat = data.get("stat", data.get("Stat"))
    message = data.get("message", data.get("Message", ""))
    if 200 <= status < 300 and stat == "ok":
        return
    raise UploadRejectedError(
        f"Server refused upload (HTTP {status}, stat={stat!r}){': ' + message if message else ''}",
        status=status,
    )


# ── transport ───────────────────────────────────────────────────────


class SmugMugTransport:
    """Signs every request with the API key and user token.

    Each worker thread keeps its own ``requests.Session`` so connections are
    reused without sharing a session across threads.
    """

    def __init__(self, api_key: Credentials, user_token: Credentials, timeout: float = 120.0):
        self._auth = OAuth1(
            api_key.token,
            client_secret=api_key.secret,
            resource_owner_key=user_token.token,
            resource_owner_secret=user_token.secret,
        )
        self._timeout = timeout
        self._local = threading.local()

    def _session(self) -> requests.Session:
        if not hasattr(self._local, "session"):
            session = requests.Session()
            session.auth = self._auth
            self._local.session = session
        return self._local.session

    def get(self, uri: str, params: dict[str, str]) -> tuple[int, bytes]:
        try:
            resp = self._session().get(uri, params=params, timeout=self._timeout)
            return resp.status_code, resp.content
        except requests.RequestException as exc:
            raise NetworkError(f"GET {uri} failed: {exc}") from exc

    def post(self, uri: str, data: Any, headers: dict[str, str]) -> tuple[int, bytes]:
        try:
            resp = self._session().post(uri, data=data, headers=headers, timeout=self._timeout)
            return resp.status_code, resp.content
        except requests.RequestException as exc:
            raise NetworkError(f"POST {uri} failed: {exc}") from exc


def _check_status(status: int, body: bytes, what: str) -> None:
    if not 200 <= status < 300:
        raise NetworkError(f"{what} returned HTTP {status}: {body[:120]!r}")


# ── API v2 client ───────────────────────────────────────────────────


class SmugMugClient:
    """Read side of the API: the authenticated user, album and image listings, search."""

    def __init__(self, transport: SmugMugTransport, api_root: str = API_ROOT):
        self._transport = transport
        self._api_root = api_root.rstrip("/")

    @property
    def album_uri(self) -> str:
        return f"{self._api_root}/api/v2/album"

    def get_user_uri(self) -> str:
        """URI path (``/api/v2/user/<nick>``) of the user that owns the token."""
        status, body = self._transport.get(f"{self._api_root}/api/v2!authuser", dict(_BASE_PARAMS))
        _check_status(status, body, "User endpoint")
        data = _decode_json(body, "user endpoint")
        try:
            user = data["Response"]["User"]
        except (KeyError, TypeError) as exc:
            raise DecodeError("No User object found in authuser response") from exc
        uri = user.get("Uri") or user.get("URI") if isinstance(user, dict) else None
        if not uri:
            raise DecodeError("No Uri found in authuser response")
        return uri

    def albums_uri(self, user_uri: str) -> str:
        return f"{self._api_root}{user_uri}!albums"

    def images_uri(self, album_key: str) -> str:
        return f"{self.album_uri}/{album_key}!images"

    def _page_fetcher(
        self,
        uri: str,
        filter_fields: str,
        item_key: str,
        factory: Callable[[dict], T],
    ) -> PageFetcher[T]:
        def fetch(start: int, count: int) -> Page[T]:
            params = dict(
                _BASE_PARAMS,
                _filter=filter_fields,
                _filteruri="",
                start=str(start),
                count=str(count),
            )
            status, body = self._transport.get(uri, params)
            _check_status(status, body, item_key + " listing")
            return decode_page(body, item_key, factory, start=start)

        return fetch

    def album_page_fetcher(self, albums_uri: str) -> PageFetcher[Album]:
        return self._page_fetcher(albums_uri, "AlbumKey,Name", "Album", Album.from_json)

    def image_page_fetcher(self, album_key: str) -> PageFetcher[RemoteImage]:
        return self._page_fetcher(
            self.images_uri(album_key),
            "ArchivedMD5,ArchivedSize,FileName",
            "AlbumImage",
            RemoteImage.from_json,
        )

    def search_albums(
        self, user_uri: str, text: str, start: int = 1, count: int = SEARCH_PAGE_SIZE
    ) -> Page[Album]:
        """One page of the user's albums ranked by relevance to *text*."""
        params = dict(
            _BASE_PARAMS,
            _filter="Album,Name,AlbumKey",
            _filteruri="",
            Scope=user_uri,
            SortDirection="Descending",
            SortMethod="Rank",
            Text=text,
            start=str(start),
            count=str(count),
        )
        status, body = self._transport.get(f"{self.album_uri}!search", params)
        _check_status(status, body, "Album search")
        return decode_page(body, "Album", Album.from_json, start=start)


# ── uploads ─────────────────────────────────────────────────────────


def media_type(filename: str) -> str:
    """Content-Type for *filename* based on its extension."""
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


class SmugMugUploader:
    """Sends one file per attempt to the upload endpoint."""

    def __init__(self, transport: SmugMugTransport, upload_uri: str = UPLOAD_URI):
        self._transport = transport
        self._upload_uri = upload_uri

    def headers_for(self, album: str, path: str, fingerprint: ContentFingerprint) -> dict[str, str]:
        name = os.path.basename(path)
        return {
            "Accept": "application/json",
            "Content-Type": media_type(name),
            "Content-MD5": fingerprint.hexdigest,
            "Content-Length": str(fingerprint.size),
            "X-Smug-ResponseType": "JSON",
            "X-Smug-AlbumUri": f"/api/v2/album/{album}",
            "X-Smug-Version": "v2",
            "X-Smug-Filename": name,
        }

    def transmit(self, album: str, path: str, fingerprint: ContentFingerprint) -> None:
        headers = self.headers_for(album, path, fingerprint)
        try:
            fh = open(path, "rb")
        except OSError as exc:
            raise FileReadError(path, exc.strerror or str(exc)) from exc
        with fh:
            status, body = self._transport.post(self._upload_uri, data=fh, headers=headers)
        logger.debug("Upload of %s answered HTTP %d: %s", path, status, body[:200])
        decode_upload_ack(status, body)
