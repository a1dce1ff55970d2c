"""Test configuration and fixtures"""

import random
from typing import Dict, List, Optional, Tuple

import pytest

from config import Settings
from subsonic import Album, NotFoundError, RemotePlaylist, Track


def make_album(album_id: str, tracks: int, discs: int = 1) -> Tuple[Album, List[Track]]:
    """Build an album whose tracks are spread evenly over *discs* discs, listed out of order."""
    per_disc = -(-tracks // discs)
    songs = [
        Track(
            id=f"{album_id}-{index}",
            disc_number=index // per_disc + 1,
            track_number=index % per_disc + 1,
            title=f"Song {index}",
        )
        for index in range(tracks)
    ]
    # Servers do not promise any particular order.
    return Album(id=album_id, title=f"Album {album_id}", track_count=tracks), list(reversed(songs))


class FakeSubsonicClient:
    """In-memory stand-in for SubsonicClient that records every call."""

    def __init__(
        self,
        albums: List[Tuple[Album, List[Track]]],
        *,
        playlists: Optional[List[RemotePlaylist]] = None,
        user: str = "cody",
        seed: Optional[int] = None,
    ) -> None:
        self.user = user
        self.base_url = "http://music.test"
        self.masked_user = "c***y"
        self.albums: Dict[str, Tuple[Album, List[Track]]] = {album.id: (album, songs) for album, songs in albums}
        self.playlists: Dict[str, RemotePlaylist] = {p.id: p for p in playlists or []}
        self.playlist_songs: Dict[str, List[str]] = {p.id: [] for p in playlists or []}
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.fail_append_at: Optional[int] = None
        self.append_failure: Exception = RuntimeError("append failure not configured")
        self.closed = False
        self._rng = random.Random(seed)
        self._next_playlist_id = 100
        self._appends = 0

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def ping(self) -> None:
        self._record("ping")

    def close(self) -> None:
        self.closed = True

    def get_random_albums(self, size: int) -> List[Album]:
        self._record("get_random_albums", size)
        albums = [album for album, _ in self.albums.values()]
        self._rng.shuffle(albums)
        return albums[:size]

    def get_album_songs(self, album_id: str) -> List[Track]:
        self._record("get_album_songs", album_id)
        if album_id not in self.albums:
            raise NotFoundError(70, "Album not found", "getAlbum")
        return list(self.albums[album_id][1])

    def get_playlists(self) -> List[RemotePlaylist]:
        self._record("get_playlists")
        return list(self.playlists.values())

    def delete_playlist(self, playlist_id: str) -> None:
        self._record("delete_playlist", playlist_id)
        if playlist_id not in self.playlists:
            raise NotFoundError(70, "Playlist not found", "deletePlaylist")
        del self.playlists[playlist_id]
        del self.playlist_songs[playlist_id]

    def create_playlist(self, name: str) -> RemotePlaylist:
        self._record("create_playlist", name)
        playlist = RemotePlaylist(id=str(self._next_playlist_id), name=name, owner=self.user, song_count=0)
        self._next_playlist_id += 1
        self.playlists[playlist.id] = playlist
        self.playlist_songs[playlist.id] = []
        return playlist

    def add_songs_to_playlist(self, playlist_id: str, song_ids) -> None:
        self._record("add_songs_to_playlist", playlist_id, list(song_ids))
        if self.fail_append_at is not None and self._appends == self.fail_append_at:
            raise self.append_failure
        self._appends += 1
        self.playlist_songs[playlist_id].extend(song_ids)


@pytest.fixture
def settings():
    """Settings for a test server with small batch limits and no retry delay"""
    return Settings(
        base_url="http://music.test",
        username="cody",
        password="sesame",
        playlist_name="Random Albums",
        num_albums=10,
        max_albums_per_request=500,
        max_songs_per_append=4,
        max_workers=3,
        request_timeout=5.0,
        retries=1,
        retry_backoff=0.0,
    )


@pytest.fixture
def small_library():
    """Three albums: A with 5 tracks over two discs, B with 3, C with 2"""
    return [make_album("A", 5, discs=2), make_album("B", 3), make_album("C", 2)]


@pytest.fixture
def fake_client(small_library):
    return FakeSubsonicClient(small_library, seed=1234)
