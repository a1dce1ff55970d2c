"""Minimal Subsonic REST API client used to build random album playlists."""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

import requests

from config import Settings

LOG = logging.getLogger("subsonic")

# Subsonic error codes we treat specially.
AUTH_ERROR_CODES = {40, 41}
NOT_FOUND_ERROR_CODE = 70


class SubsonicError(Exception):
    """Base class for everything that can go wrong talking to the server."""


class TransportError(SubsonicError):
    """Raised when the request did not produce a usable Subsonic envelope.

    Covers network failures, timeouts, HTTP error statuses and bodies that are
    not the JSON payload the API promises. These are worth retrying.
    """


class MalformedResponseError(TransportError):
    """Raised when a successful envelope lacks the element the endpoint returns."""


class RemoteError(SubsonicError):
    """Raised when the server understood the request but rejected it."""

    def __init__(self, code: Optional[int], message: str, endpoint: str = "") -> None:
        self.code = code
        self.message = message
        self.endpoint = endpoint
        prefix = f"{endpoint}: " if endpoint else ""
        super().__init__(f"{prefix}Subsonic error (code {code}): {message}")


class AuthenticationError(RemoteError):
    """Raised when the server refuses the supplied credentials."""


class NotFoundError(RemoteError):
    """Raised when the requested resource does not exist on the server."""


@dataclass(frozen=True, slots=True)
class AuthToken:
    salt: str
    token: str


@dataclass(frozen=True, slots=True)
class Album:
    id: str
    title: str
    track_count: int


@dataclass(frozen=True, slots=True)
class Track:
    id: str
    disc_number: int
    track_number: int
    title: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RemotePlaylist:
    id: str
    name: str
    owner: Optional[str] = None
    song_count: Optional[int] = None


def generate_auth_token(password: str, salt: Optional[str] = None) -> AuthToken:
    """Derive the Subsonic token for *password*.

    The server verifies ``md5(password + salt)`` as lowercase hex, so the
    concatenation order and encoding must match exactly. A fresh random salt
    is drawn unless one is given.
    """
    if salt is None:
        salt = secrets.token_hex(8)
    token = hashlib.md5((password + salt).encode("utf-8")).hexdigest()
    return AuthToken(salt=salt, token=token)


def mask_username(user: str) -> str:
    """Return a masked representation of a username for logging."""
    if not user:
        return "***"
    if len(user) <= 2:
        return f"{user[0]}***" if len(user) == 1 else f"{user[0]}***{user[-1]}"
    return f"{user[0]}***{user[-1]}"


def sanitize_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Make a shallow copy of params with sensitive values masked."""
    sensitive_keys = {"p", "password", "t", "token", "s", "salt"}
    sanitized = {}
    for key, value in params.items():
        if key in sensitive_keys:
            sanitized[key] = "***"
        elif key == "u" and isinstance(value, str):
            sanitized[key] = mask_username(value)
        else:
            sanitized[key] = value
    return sanitized


def strip_query(url: str) -> str:
    """Drop the query string, which carries the credentials, from *url*."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _as_list(value: Any, element: str) -> List[Dict[str, Any]]:
    # Some servers collapse single-element arrays into a bare object.
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    if not isinstance(value, list):
        raise MalformedResponseError(f"Expected a list of '{element}' entries, got {type(value).__name__}.")
    return [item for item in value if isinstance(item, dict)]


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SubsonicClient:
    """Client for the handful of Subsonic endpoints the playlist builder needs."""

    def __init__(
        self,
        base_url: str,
        user: str,
        password: str,
        *,
        api_version: str = "1.16.1",
        client_name: str = "random-albums",
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user = user
        self._password = password
        self.api_version = api_version
        self.client_name = client_name
        self.timeout = timeout
        self.session = session or requests.Session()
        self.masked_user = mask_username(user)

    @classmethod
    def from_settings(cls, settings: Settings) -> SubsonicClient:
        return cls(
            base_url=settings.base_url,
            user=settings.username,
            password=settings.password,
            api_version=settings.api_version,
            client_name=settings.client_name,
            timeout=settings.request_timeout,
        )

    def close(self) -> None:
        self.session.close()

    def _auth_params(self) -> Dict[str, Any]:
        auth = generate_auth_token(self._password)
        return {"u": self.user, "t": auth.token, "s": auth.salt}

    def call(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Issue one signed request and return the unwrapped ``subsonic-response``.

        Raises :class:`TransportError` when no usable envelope came back and
        :class:`RemoteError` when the envelope reports ``status: failed``.
        No retries happen here.
        """
        params = params or {}
        base_params = {
            "v": self.api_version,
            "c": self.client_name,
            "f": "json",
        }
        full_params = {**params, **base_params, **self._auth_params()}
        url = f"{self.base_url}/rest/{endpoint}.view"

        LOG.debug("GET %s with params %s", url, sanitize_params(full_params))
        try:
            response = self.session.get(url, params=full_params, timeout=self.timeout)
        except requests.RequestException as exc:
            # The exception text can embed the signed URL, so only the type is reported.
            raise TransportError(f"Request to {endpoint} failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            raise TransportError(
                f"{endpoint} returned HTTP {response.status_code} for {strip_query(response.url or url)}"
            )

        content_type = response.headers.get("Content-Type", "")
        if "json" not in content_type.lower():
            raise TransportError(
                f"Unexpected content type {content_type or 'none'!r} from {endpoint}; "
                "check that the base URL points at a Subsonic server."
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError(f"Invalid JSON response from {endpoint}: {exc}") from exc

        subsonic_response = payload.get("subsonic-response") if isinstance(payload, dict) else None
        if not isinstance(subsonic_response, dict):
            raise TransportError(f"Malformed response from {endpoint}: missing 'subsonic-response' payload.")

        status = subsonic_response.get("status")
        if status == "failed":
            error_payload = subsonic_response.get("error") or {}
            code = _optional_int(error_payload.get("code"))
            message = str(error_payload.get("message", "Unknown error"))
            if code in AUTH_ERROR_CODES:
                raise AuthenticationError(code, message, endpoint)
            if code == NOT_FOUND_ERROR_CODE:
                raise NotFoundError(code, message, endpoint)
            raise RemoteError(code, message, endpoint)
        if status != "ok":
            raise TransportError(f"Malformed response from {endpoint}: unknown status {status!r}.")

        return subsonic_response

    def ping(self) -> None:
        """Ensure credentials and connectivity are valid."""
        self.call("ping")

    def get_random_albums(self, size: int) -> List[Album]:
        """Return up to *size* albums in the random order the server chose."""
        payload = self.call("getAlbumList2", params={"type": "random", "size": size})
        album_list = payload.get("albumList2")
        if not isinstance(album_list, dict):
            raise MalformedResponseError("getAlbumList2 response did not include 'albumList2'.")

        albums: List[Album] = []
        for entry in _as_list(album_list.get("album"), "album"):
            album_id = entry.get("id")
            if album_id is None:
                continue
            albums.append(
                Album(
                    id=str(album_id),
                    title=str(entry.get("name") or entry.get("title") or ""),
                    track_count=_optional_int(entry.get("songCount")) or 0,
                )
            )
        LOG.debug("Random album listing returned %d album(s).", len(albums))
        return albums

    def get_album_songs(self, album_id: str) -> List[Track]:
        """Return the songs of one album in the order the server listed them."""
        payload = self.call("getAlbum", params={"id": album_id})
        album = payload.get("album")
        if not isinstance(album, dict):
            raise MalformedResponseError(f"getAlbum response for {album_id} did not include 'album'.")

        tracks: List[Track] = []
        for entry in _as_list(album.get("song"), "song"):
            song_id = entry.get("id")
            if song_id is None:
                continue
            tracks.append(
                Track(
                    id=str(song_id),
                    disc_number=_optional_int(entry.get("discNumber")) or 1,
                    track_number=_optional_int(entry.get("track")) or 0,
                    title=entry.get("title"),
                )
            )
        return tracks

    def get_playlists(self) -> List[RemotePlaylist]:
        payload = self.call("getPlaylists")
        playlists = payload.get("playlists")
        # An empty "playlists": {} block is valid; a missing one is not.
        if not isinstance(playlists, dict):
            raise MalformedResponseError("getPlaylists response did not include 'playlists'.")
        return [_playlist_from_payload(entry) for entry in _as_list(playlists.get("playlist"), "playlist") if entry.get("id") is not None]

    def delete_playlist(self, playlist_id: str) -> None:
        self.call("deletePlaylist", params={"id": playlist_id})

    def create_playlist(self, name: str) -> RemotePlaylist:
        payload = self.call("createPlaylist", params={"name": name})
        playlist = payload.get("playlist")
        if not isinstance(playlist, dict) or playlist.get("id") is None:
            raise MalformedResponseError("createPlaylist response did not include the new 'playlist'.")
        return _playlist_from_payload(playlist)

    def add_songs_to_playlist(self, playlist_id: str, song_ids: Sequence[str]) -> None:
        """Append *song_ids*, in order, to the end of the playlist."""
        self.call("updatePlaylist", params={"playlistId": playlist_id, "songIdToAdd": list(song_ids)})


def _playlist_from_payload(entry: Dict[str, Any]) -> RemotePlaylist:
    return RemotePlaylist(
        id=str(entry["id"]),
        name=str(entry.get("name", "")),
        owner=entry.get("owner"),
        song_count=_optional_int(entry.get("songCount")),
    )


__all__ = [
    "Album",
    "AuthToken",
    "AuthenticationError",
    "MalformedResponseError",
    "NotFoundError",
    "RemoteError",
    "RemotePlaylist",
    "SubsonicClient",
    "SubsonicError",
    "Track",
    "TransportError",
    "generate_auth_token",
    "mask_username",
    "sanitize_params",
]
