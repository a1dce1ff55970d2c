#!/usr/bin/env python3
"""Replace a Subsonic playlist with the tracks of randomly chosen whole albums."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, TypeVar

from rich.logging import RichHandler
from tqdm import tqdm

from config import ConfigurationError, Settings, get_settings
from subsonic import (
    Album,
    AuthenticationError,
    NotFoundError,
    RemotePlaylist,
    SubsonicClient,
    SubsonicError,
    Track,
    TransportError,
)

LOG = logging.getLogger("random_albums")

T = TypeVar("T")


class EmptyLibraryError(SubsonicError):
    """Raised when the random album listing comes back empty."""


class AlbumNotFoundError(SubsonicError):
    """Raised when a sampled album vanished before its songs could be fetched."""

    def __init__(self, album_id: str) -> None:
        self.album_id = album_id
        super().__init__(f"Album {album_id} no longer exists on the server; rerun to sample again.")


class PartialSubmissionError(SubsonicError):
    """Raised when an append batch fails after the playlist was created.

    The playlist is deliberately left in place with whatever was appended so far.
    """

    def __init__(self, playlist_id: str, appended: int, total: int) -> None:
        self.playlist_id = playlist_id
        self.appended = appended
        self.total = total
        super().__init__(
            f"Playlist {playlist_id} was only partially populated: {appended} of {total} songs appended."
        )


@dataclass(slots=True)
class PlaylistSpec:
    """Desired end state of the target playlist."""

    name: str
    song_ids: List[str] = field(default_factory=list)


@dataclass(slots=True)
class SyncResult:
    """Outcome of one synchronization run."""

    playlist_name: str
    playlist_id: Optional[str]
    albums: int
    songs: int
    batches: int
    deleted_playlist_id: Optional[str] = None
    dry_run: bool = False


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield contiguous slices of *items* holding at most *size* elements."""
    if size < 1:
        raise ValueError(f"Batch size must be >= 1, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def call_with_retries(
    func: Callable[..., T],
    *args: object,
    retries: int,
    backoff: float,
    description: str,
) -> T:
    """Call *func*, retrying on :class:`TransportError` with exponential backoff.

    Only use this for idempotent reads. Remote errors are never retried.
    """
    max_attempts = 1 + max(0, retries)
    attempt = 0
    while True:
        attempt += 1
        try:
            return func(*args)
        except TransportError as exc:
            if attempt >= max_attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            LOG.warning(
                "%s failed (%s); retrying in %.2f seconds (attempt %d/%d).",
                description,
                exc,
                delay,
                attempt + 1,
                max_attempts,
            )
            time.sleep(delay)


def sample_albums(client: SubsonicClient, desired_count: int, max_per_request: int) -> List[Album]:
    """Draw a random set of albums in one request.

    The requested size is clamped to *max_per_request*; a smaller library
    simply yields fewer albums. Order is the server's random draw order.
    """
    size = min(desired_count, max_per_request)
    if size < 1:
        raise ValueError(f"Album count must be >= 1, got {desired_count}")

    albums = client.get_random_albums(size)

    unique: List[Album] = []
    seen = set()
    for album in albums[:size]:
        if album.id in seen:
            LOG.debug("Dropping repeated album %s from the random listing.", album.id)
            continue
        seen.add(album.id)
        unique.append(album)

    if not unique:
        raise EmptyLibraryError("The server returned no albums; nothing to build a playlist from.")

    if len(unique) < size:
        LOG.info("Requested %d albums but the library only provided %d.", size, len(unique))
    return unique


def track_sort_key(track: Track) -> tuple[int, int]:
    return (track.disc_number or 1, track.track_number or 0)


def expand_album(client: SubsonicClient, album: Album) -> List[Track]:
    """Return the album's tracks ordered by disc then track number."""
    try:
        tracks = client.get_album_songs(album.id)
    except NotFoundError as exc:
        raise AlbumNotFoundError(album.id) from exc
    # sorted() is stable, so tracks sharing a position keep the server's order.
    return sorted(tracks, key=track_sort_key)


def expand_albums(
    client: SubsonicClient,
    albums: Sequence[Album],
    *,
    max_workers: int = 4,
    retries: int = 0,
    retry_backoff: float = 1.0,
    progress: bool = False,
) -> List[List[Track]]:
    """Expand every album concurrently; the result follows the order of *albums*."""
    results: List[Optional[List[Track]]] = [None] * len(albums)
    if not albums:
        return []

    bar = tqdm(total=len(albums), desc="Expanding albums", unit="album") if progress else None

    try:
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            future_to_index = {
                executor.submit(
                    call_with_retries,
                    expand_album,
                    client,
                    album,
                    retries=retries,
                    backoff=retry_backoff,
                    description=f"Fetching album {album.id}",
                ): index
                for index, album in enumerate(albums)
            }
            try:
                for future in as_completed(future_to_index):
                    index = future_to_index[future]
                    results[index] = future.result()
                    LOG.debug(
                        "Expanded album %s (%s) into %d track(s).",
                        albums[index].id,
                        albums[index].title,
                        len(results[index] or []),
                    )
                    if bar is not None:
                        bar.update(1)
            except SubsonicError:
                for pending in future_to_index:
                    pending.cancel()
                raise
    finally:
        if bar is not None:
            bar.close()

    if any(result is None for result in results):
        raise RuntimeError("Album expansion finished without tracks for every album.")
    return [result for result in results if result is not None]


def build_playlist_spec(name: str, track_lists: Sequence[Sequence[Track]]) -> PlaylistSpec:
    song_ids = [track.id for tracks in track_lists for track in tracks]
    return PlaylistSpec(name=name, song_ids=song_ids)


class PlaylistSynchronizer:
    """Replace the target playlist by deleting and recreating it.

    Subsonic has no atomic "replace playlist contents" call, so each run
    deletes the playlist found by name, creates an empty one and appends
    songs in ordered batches. Batches are sent one after another because
    every append extends the current tail. Nothing is rolled back on failure.
    """

    def __init__(self, client: SubsonicClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings

    def _read(self, func: Callable[..., T], *args: object, description: str) -> T:
        return call_with_retries(
            func,
            *args,
            retries=self.settings.retries,
            backoff=self.settings.retry_backoff,
            description=description,
        )

    def sample(self) -> List[Album]:
        albums = self._read(
            sample_albums,
            self.client,
            self.settings.num_albums,
            self.settings.max_albums_per_request,
            description="Random album listing",
        )
        LOG.info("Sampled %d album(s).", len(albums))
        return albums

    def expand(self, albums: Sequence[Album], *, progress: bool = False) -> List[List[Track]]:
        track_lists = expand_albums(
            self.client,
            albums,
            max_workers=self.settings.max_workers,
            retries=self.settings.retries,
            retry_backoff=self.settings.retry_backoff,
            progress=progress,
        )
        LOG.info("Expanded %d album(s) into %d track(s).", len(albums), sum(len(tracks) for tracks in track_lists))
        return track_lists

    def find_playlist(self, name: str) -> Optional[RemotePlaylist]:
        playlists = self._read(self.client.get_playlists, description="Playlist listing")
        for playlist in playlists:
            if playlist.name != name:
                continue
            # Playlists shared by other users are visible but not ours to delete.
            if playlist.owner is not None and playlist.owner.casefold() != self.client.user.casefold():
                LOG.debug("Ignoring playlist %s named '%s' owned by another user.", playlist.id, name)
                continue
            return playlist
        return None

    def locate_and_delete(self, name: str) -> Optional[str]:
        """Delete the playlist called *name* if there is one; return its id."""
        existing = self.find_playlist(name)
        if existing is None:
            LOG.info("No existing playlist named '%s'; a new one will be created.", name)
            return None
        self.client.delete_playlist(existing.id)
        LOG.info("Deleted existing playlist '%s' (id %s).", name, existing.id)
        return existing.id

    def create(self, name: str) -> RemotePlaylist:
        playlist = self.client.create_playlist(name)
        LOG.info("Created playlist '%s' (id %s).", playlist.name or name, playlist.id)
        return playlist

    def populate(self, playlist_id: str, song_ids: Sequence[str]) -> int:
        """Append *song_ids* in order, one bounded batch at a time; return the batch count."""
        total = len(song_ids)
        appended = 0
        batches = 0
        for batch in chunked(song_ids, self.settings.max_songs_per_append):
            try:
                self.client.add_songs_to_playlist(playlist_id, batch)
            except SubsonicError as exc:
                raise PartialSubmissionError(playlist_id, appended, total) from exc
            appended += len(batch)
            batches += 1
            LOG.debug("Appended batch %d (%d songs, %d/%d total).", batches, len(batch), appended, total)
        return batches

    def submit(self, spec: PlaylistSpec) -> tuple[Optional[str], RemotePlaylist, int]:
        deleted_id = self.locate_and_delete(spec.name)
        playlist = self.create(spec.name)
        batches = self.populate(playlist.id, spec.song_ids)
        return deleted_id, playlist, batches

    def run(self, *, dry_run: bool = False, progress: bool = False) -> SyncResult:
        albums = self.sample()
        track_lists = self.expand(albums, progress=progress)
        spec = build_playlist_spec(self.settings.playlist_name, track_lists)

        if dry_run:
            for album, tracks in zip(albums, track_lists):
                LOG.info("[dry-run] Would add '%s' (%d tracks).", album.title or album.id, len(tracks))
            LOG.info(
                "[dry-run] Would replace playlist '%s' with %d songs in %d batch(es).",
                spec.name,
                len(spec.song_ids),
                len(list(chunked(spec.song_ids, self.settings.max_songs_per_append))),
            )
            return SyncResult(
                playlist_name=spec.name,
                playlist_id=None,
                albums=len(albums),
                songs=len(spec.song_ids),
                batches=0,
                dry_run=True,
            )

        deleted_id, playlist, batches = self.submit(spec)
        return SyncResult(
            playlist_name=spec.name,
            playlist_id=playlist.id,
            albums=len(albums),
            songs=len(spec.song_ids),
            batches=batches,
            deleted_playlist_id=deleted_id,
        )


def configure_logging(level_name: str, *, verbose: bool = False, debug: bool = False, log_file: Optional[Path] = None) -> None:
    """Configure rich console logging and an optional debug log file."""
    level = getattr(logging, level_name.upper(), logging.INFO)
    if verbose and not debug:
        level = logging.INFO
    if debug:
        level = logging.DEBUG

    console_handler = RichHandler(rich_tracebacks=False, markup=False)
    console_handler.setLevel(level)
    handlers: List[logging.Handler] = [console_handler]

    root_level = level
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        handlers.append(file_handler)
        root_level = logging.DEBUG

    logging.basicConfig(level=root_level, handlers=handlers, force=True)
    # urllib3 debug lines would print the signed request URLs.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    if log_file:
        LOG.debug("File logging enabled at %s", log_file)


def positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {raw!r}") from exc
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return value


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replace a Subsonic playlist with randomly chosen whole albums.")
    parser.add_argument("--albums", type=positive_int, help="Number of albums to sample (default: NUM_ALBUMS).")
    parser.add_argument("--playlist-name", help="Name of the playlist to replace (default: PLAYLIST_NAME).")
    parser.add_argument("--concurrency", type=positive_int, help="Parallel album fetches (default: MAX_WORKERS).")
    parser.add_argument("--dry-run", action="store_true", help="Sample and expand albums without touching playlists.")
    parser.add_argument("--progress", action="store_true", help="Show a progress bar while fetching albums.")
    parser.add_argument("--verbose", action="store_true", help="Enable informational logging.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--log-file", help="Also write a debug log to this path.")
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Fold command-line overrides into *settings*."""
    overrides = {}
    if args.albums is not None:
        overrides["num_albums"] = args.albums
    if args.playlist_name:
        overrides["playlist_name"] = args.playlist_name.strip()
    if args.concurrency is not None:
        overrides["max_workers"] = args.concurrency
    if overrides:
        settings = dataclasses.replace(settings, **overrides)

    if settings.num_albums > settings.max_albums_per_request:
        LOG.warning(
            "Album count too big (%d); the server returns at most %d per request. Using %d.",
            settings.num_albums,
            settings.max_albums_per_request,
            settings.max_albums_per_request,
        )
        settings = dataclasses.replace(settings, num_albums=settings.max_albums_per_request)
    return settings


def run(args: argparse.Namespace) -> int:
    log_path = Path(args.log_file).expanduser() if args.log_file else None

    try:
        settings = get_settings()
    except ConfigurationError as exc:
        configure_logging("INFO", verbose=args.verbose, debug=args.debug, log_file=log_path)
        LOG.error("Configuration error: %s", exc)
        return 1

    configure_logging(settings.log_level, verbose=args.verbose, debug=args.debug, log_file=log_path)
    settings = apply_overrides(settings, args)

    if not settings.playlist_name:
        LOG.error("Configuration error: playlist name must not be empty.")
        return 1

    client = SubsonicClient.from_settings(settings)
    LOG.info("Using Subsonic server at %s with user %s.", client.base_url, client.masked_user)

    start_time = time.perf_counter()
    try:
        try:
            client.ping()
        except AuthenticationError as exc:
            LOG.error("Authentication failed: %s", exc)
            return 1
        except SubsonicError as exc:
            LOG.error("Unable to reach Subsonic server: %s", exc)
            return 1

        synchronizer = PlaylistSynchronizer(client, settings)
        try:
            result = synchronizer.run(dry_run=args.dry_run, progress=args.progress)
        except PartialSubmissionError as exc:
            LOG.error("%s The partial playlist was left in place.", exc)
            LOG.debug("Append failure cause: %s", exc.__cause__)
            return 1
        except SubsonicError as exc:
            LOG.error("Run failed: %s", exc)
            return 1
    finally:
        client.close()

    elapsed = time.perf_counter() - start_time
    LOG.info(
        "Summary: playlist='%s' id=%s albums=%d songs=%d batches=%d replaced=%s dry_run=%s elapsed=%.2fs",
        result.playlist_name,
        result.playlist_id or "-",
        result.albums,
        result.songs,
        result.batches,
        result.deleted_playlist_id is not None,
        result.dry_run,
        elapsed,
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
