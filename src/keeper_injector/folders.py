"""Folder hierarchy for path-based folder addressing.

Keeper returns folders as a flat list of ``(uid, parent_uid, name)``
entries. FolderTree links them so ``Production/Databases`` can be
resolved to a folder UID and back.

Example:
    >>> from keeper_injector.backend import BackendFolder
    >>> tree = FolderTree.build([
    ...     BackendFolder(uid="f1", parent_uid="", name="Production"),
    ...     BackendFolder(uid="f2", parent_uid="f1", name="Databases"),
    ... ])
    >>> tree.resolve_path("Production/Databases")
    'f2'
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from keeper_injector.errors import FolderNotFoundError

if TYPE_CHECKING:
    from keeper_injector.backend import BackendFolder


@dataclass(eq=False)
class FolderNode:
    """A folder and its links to parent and children."""

    uid: str
    name: str
    parent: FolderNode | None = None
    children: list[FolderNode] = field(default_factory=list)


def _split_path(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


class FolderTree:
    """Hierarchical view over a flat folder list.

    Folders whose parent is missing from the listing are treated as roots.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, FolderNode] = {}
        self._roots: list[FolderNode] = []

    @classmethod
    def build(cls, folders: Iterable[BackendFolder]) -> FolderTree:
        """Build a tree from a flat folder listing.

        Args:
            folders: Folders as returned by the backend.

        Returns:
            The linked FolderTree.
        """
        tree = cls()
        listing = list(folders)
        for folder in listing:
            tree._nodes[folder.uid] = FolderNode(uid=folder.uid, name=folder.name)

        for folder in listing:
            node = tree._nodes[folder.uid]
            parent = tree._nodes.get(folder.parent_uid) if folder.parent_uid else None
            if parent is None:
                tree._roots.append(node)
            else:
                node.parent = parent
                parent.children.append(node)
        return tree

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def roots(self) -> list[FolderNode]:
        """Return the top-level folders."""
        return list(self._roots)

    def resolve_path(self, path: str) -> str:
        """Resolve a ``/``-separated folder path to a folder UID.

        Leading, trailing and repeated slashes are ignored. At each level
        the first child with a matching name wins.

        Args:
            path: Folder path, e.g. ``Production/Databases``.

        Returns:
            The UID of the last folder on the path.

        Raises:
            FolderNotFoundError: If the path is empty or any component is missing.
        """
        parts = _split_path(path)
        if not parts:
            raise FolderNotFoundError(path, detail="folder path cannot be empty")

        candidates = self._roots
        found: FolderNode | None = None
        for depth, part in enumerate(parts):
            found = next((node for node in candidates if node.name == part), None)
            if found is None:
                attempted = "/".join(parts[: depth + 1])
                raise FolderNotFoundError(
                    path, detail=f"no folder at '{attempted}' (searching for '{part}')"
                )
            candidates = found.children

        if found is None:
            raise FolderNotFoundError(path, detail="folder path cannot be empty")
        return found.uid

    def get_path(self, folder_uid: str) -> str:
        """Return the full path of a folder, or "" for an unknown UID."""
        node = self._nodes.get(folder_uid)
        names: list[str] = []
        while node is not None:
            names.append(node.name)
            node = node.parent
        return "/".join(reversed(names))

    def node(self, folder_uid: str) -> FolderNode | None:
        """Return the node for a folder UID, if known."""
        return self._nodes.get(folder_uid)

    def list_paths(self) -> list[str]:
        """Return the full path of every folder, sorted."""
        return sorted(path for uid in self._nodes if (path := self.get_path(uid)))


__all__ = ["FolderNode", "FolderTree"]
