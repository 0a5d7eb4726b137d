"""Resolve the download location of the latest release for a host architecture.

Resolution queries the feed's "latest release" document once and then walks
a fixed fallback order:

1. the deterministic per-tag download URL, verified with a GET probe;
2. an asset named exactly ``<prefix>-linux-<arch>``;
3. the first asset whose name starts with ``<prefix>-linux``;
4. the unverified ``releases/latest/download`` redirect.

Only a failed or empty metadata response aborts resolution.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import NetworkError
from .versions import normalize_tag

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReleaseAsset:
    """A downloadable file attached to a release."""

    name: str
    download_url: str


@dataclass(frozen=True, slots=True)
class ReleaseDocument:
    """Typed view of the feed's latest-release metadata."""

    raw_tag: str = ""
    assets: tuple[ReleaseAsset, ...] = ()
    message: str | None = None

    @property
    def tag(self) -> str:
        """Return the normalised release tag (may be empty)."""
        return normalize_tag(self.raw_tag)

    @classmethod
    def from_payload(cls, payload: object) -> ReleaseDocument:
        """Build a document from decoded JSON, ignoring malformed fields."""
        if not isinstance(payload, Mapping):
            return cls()
        tag_value = payload.get("tag_name")
        raw_tag = tag_value.strip() if isinstance(tag_value, str) else ""
        message_value = payload.get("message")
        message = message_value.strip() if isinstance(message_value, str) else None
        assets: list[ReleaseAsset] = []
        assets_value = payload.get("assets")
        if isinstance(assets_value, list):
            for item in assets_value:
                if not isinstance(item, Mapping):
                    continue
                name = item.get("name")
                url = item.get("browser_download_url")
                if isinstance(name, str) and isinstance(url, str) and name and url:
                    assets.append(ReleaseAsset(name=name, download_url=url))
        return cls(raw_tag=raw_tag, assets=tuple(assets), message=message or None)

    @classmethod
    def parse(cls, text: str) -> ReleaseDocument:
        """Parse the raw response body; undecodable bodies yield an empty document."""
        try:
            payload: Any = json.loads(text)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Release metadata is not valid JSON: %s", exc)
            return cls()
        return cls.from_payload(payload)


@dataclass(frozen=True, slots=True)
class ReleaseDescriptor:
    """The outcome of a resolution: a tag (possibly empty) and where to download."""

    tag: str
    download_url: str
    source: str = "tagged"


@dataclass(frozen=True, slots=True)
class ReleaseFeed:
    """URL conventions of a GitHub-style release feed."""

    repository: str
    asset_prefix: str
    api_url: str = "https://api.github.com"
    web_url: str = "https://github.com"

    @property
    def latest_release_url(self) -> str:
        """Return the metadata endpoint for the latest release."""
        return f"{self.api_url}/repos/{self.repository}/releases/latest"

    @property
    def repository_url(self) -> str:
        """Return the public repository root."""
        return f"{self.web_url}/{self.repository}"

    def asset_name(self, arch: str) -> str:
        """Return the exact asset name expected for *arch*."""
        return f"{self.asset_prefix}-linux-{arch}"

    def tagged_download_url(self, tag: str, arch: str) -> str:
        """Return the deterministic download URL for *tag*."""
        return f"{self.repository_url}/releases/download/{tag}/{self.asset_name(arch)}"

    def latest_download_url(self, arch: str) -> str:
        """Return the unverified convenience redirect to the newest asset."""
        return f"{self.repository_url}/releases/latest/download/{self.asset_name(arch)}"


@dataclass(slots=True)
class ReleaseResolver:
    """Query the feed and pick a download location for an architecture."""

    feed: ReleaseFeed
    token: str | None = None
    timeout: float | None = 30.0
    client: httpx.Client | None = field(default=None, repr=False)

    def resolve(self, arch: str) -> ReleaseDescriptor:
        """Return the best :class:`ReleaseDescriptor` for *arch*."""
        with self._session() as client:
            document = self.fetch_document(client)
            if document.message:
                LOGGER.info("Release feed message: %s", document.message)

            tag = document.tag
            if tag:
                candidate = self.feed.tagged_download_url(document.raw_tag, arch)
                status = self.probe(client, candidate)
                if status == 200:
                    return ReleaseDescriptor(tag=tag, download_url=candidate, source="tagged")
                LOGGER.info(
                    "Tagged download URL %s returned HTTP %s; checking release assets.",
                    candidate,
                    status if status is not None else "n/a",
                )

        asset, exact = self.match_asset(document, arch)
        if asset is not None:
            return ReleaseDescriptor(
                tag=tag,
                download_url=asset.download_url,
                source="asset" if exact else "asset-fallback",
            )

        LOGGER.info("No matching release asset; using the latest/download redirect.")
        return ReleaseDescriptor(
            tag=tag,
            download_url=self.feed.latest_download_url(arch),
            source="latest-redirect",
        )

    def fetch_document(self, client: httpx.Client) -> ReleaseDocument:
        """Fetch and parse the latest-release metadata."""
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        url = self.feed.latest_release_url
        try:
            response = client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Failed to query release feed {url}: {exc}") from exc
        body = response.text
        if not body.strip():
            raise NetworkError(
                f"Release feed {url} returned an empty response (HTTP {response.status_code})."
            )
        if response.status_code != 200:
            LOGGER.warning("Release feed %s answered HTTP %s.", url, response.status_code)
        return ReleaseDocument.parse(body)

    def probe(self, client: httpx.Client, url: str) -> int | None:
        """Return the final HTTP status for *url* after redirects, without reading the body."""
        try:
            with client.stream("GET", url, follow_redirects=True) as response:
                return response.status_code
        except httpx.HTTPError as exc:
            LOGGER.info("Probe of %s failed: %s", url, exc)
            return None

    def match_asset(
        self,
        document: ReleaseDocument,
        arch: str,
    ) -> tuple[ReleaseAsset | None, bool]:
        """Return ``(asset, exact)`` for the best asset matching *arch*."""
        wanted = self.feed.asset_name(arch)
        generic_prefix = f"{self.feed.asset_prefix}-linux"
        fallback: ReleaseAsset | None = None
        for asset in document.assets:
            if asset.name == wanted:
                return asset, True
            if fallback is None and asset.name.startswith(generic_prefix):
                fallback = asset
        return fallback, False

    @contextmanager
    def _session(self) -> Iterator[httpx.Client]:
        if self.client is not None:
            yield self.client
            return
        with httpx.Client(timeout=self.timeout) as client:
            yield client


__all__ = [
    "ReleaseAsset",
    "ReleaseDescriptor",
    "ReleaseDocument",
    "ReleaseFeed",
    "ReleaseResolver",
]
