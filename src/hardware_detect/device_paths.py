"""
Hardware Detection - Device Path Resolver

Maps a GPU's PCI address to its DRM card and render nodes through the
kernel's /dev/dri/by-path symlinks. Raw names such as card0/card1 change
with enumeration order; only the PCI-keyed links are stable across reboots.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional

from common.host import HostFacts

logger = logging.getLogger(__name__)

PCI_ADDRESS_RE = re.compile(r"^[0-9a-f]{4}:[0-9a-f]{2}:[0-9a-f]{2}\.[0-7]$")
SHORT_PCI_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}:[0-9a-f]{2}\.[0-7]$")
BY_PATH_ENTRY_RE = re.compile(
    r"^pci-(?P<address>[0-9a-fA-F]{4}:[0-9a-fA-F]{2}:[0-9a-fA-F]{2}\.[0-7])-(?P<kind>card|render)$"
)


def canonical_pci_address(address: str) -> str:
    """
    Normalise a PCI address to domain:bus:device.function in lower case.

    "C3:00.0" becomes "0000:c3:00.0". Anything unrecognisable is returned
    lower-cased and stripped so comparisons still behave predictably.
    """
    addr = address.strip().lower()
    if SHORT_PCI_ADDRESS_RE.match(addr):
        return f"0000:{addr}"
    return addr


@dataclass(frozen=True)
class ByPathEntry:
    """One parsed /dev/dri/by-path symlink."""

    pci_address: str
    kind: str       # "card" or "render"
    link: str       # e.g. /dev/dri/by-path/pci-0000:c3:00.0-card
    target: str     # e.g. /dev/dri/card1


@dataclass(frozen=True)
class ResolvedPaths:
    """Result of resolving one PCI address."""

    card_path: Optional[str] = None
    render_path: Optional[str] = None
    card_link: Optional[str] = None
    render_link: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.card_path is not None and self.render_path is not None


class DevicePathResolver:
    """Resolves PCI addresses to stable DRM device paths."""

    BY_PATH_DIR = "/dev/dri/by-path"

    def __init__(self, host: Optional[HostFacts] = None, by_path_dir: Optional[str] = None):
        self.host = host or HostFacts()
        self.by_path_dir = by_path_dir or self.BY_PATH_DIR

    def list_entries(self) -> List[ByPathEntry]:
        """Parse every PCI card/render link in the by-path directory."""
        directory = self.host.path(self.by_path_dir)
        if not directory.is_dir():
            logger.debug(f"{self.by_path_dir} not present")
            return []

        entries = []
        for link in sorted(directory.iterdir()):
            match = BY_PATH_ENTRY_RE.match(link.name)
            if not match:
                continue
            if not link.is_symlink():
                logger.debug(f"Skipping non-symlink {link.name}")
                continue

            target = os.readlink(link)
            if not os.path.isabs(target):
                target = os.path.normpath(os.path.join(self.by_path_dir, target))

            if not self.host.exists(target):
                logger.warning(f"{link.name} points to missing node {target}")
                continue

            entries.append(ByPathEntry(
                pci_address=canonical_pci_address(match.group("address")),
                kind=match.group("kind"),
                link=f"{self.by_path_dir}/{link.name}",
                target=target,
            ))

        return entries

    def resolve(self, pci_address: str) -> ResolvedPaths:
        """
        Find the card and render nodes for a PCI address.

        Never guesses a device index: when no by-path entry matches, the
        result has ok=False and callers must treat that as a configuration
        error.
        """
        wanted = canonical_pci_address(pci_address)
        found = {}

        for entry in self.list_entries():
            if entry.pci_address == wanted and entry.kind not in found:
                found[entry.kind] = entry

        card = found.get("card")
        render = found.get("render")

        result = ResolvedPaths(
            card_path=card.target if card else None,
            render_path=render.target if render else None,
            card_link=card.link if card else None,
            render_link=render.link if render else None,
        )

        if result.ok:
            logger.debug(f"Resolved {wanted}: {result.card_path}, {result.render_path}")
        else:
            logger.info(f"Could not resolve DRM nodes for {wanted} (found: {sorted(found) or 'none'})")

        return result
