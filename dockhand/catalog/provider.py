"""Extension catalog: remote document plus local repository files."""
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import requests
import yaml
from pydantic import ValidationError

from dockhand.core.errors import CatalogError
from dockhand.core.logger import get_logger
from dockhand.core.retry import retry
from .models import CatalogCategory, CatalogDocument, ExtensionDescriptor

logger = get_logger(__name__)

SYSTEM_CATEGORY = "System"
MIN_CATALOG_VERSION = "1.0.0"
LOCAL_CATALOG_PATTERNS = ("*.json", "*.yml", "*.yaml")


class CatalogEntry(NamedTuple):
    """A selectable extension: display title and extension name."""

    title: str
    name: str


def version_key(version: Optional[str]) -> Tuple[int, ...]:
    """Numeric sort key of a dotted version; non-numeric parts count as 0."""
    if not version:
        return ()
    parts = []
    for part in str(version).split('.'):
        digits = ''.join(ch for ch in part if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def parse_document(text: str, source: str) -> CatalogDocument:
    """Parse a JSON or YAML catalog document.

    Raises:
        CatalogError: Unparseable text or an invalid layout
    """
    try:
        if source.endswith('.json'):
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text)
        return CatalogDocument.model_validate(raw or {})
    except (json.JSONDecodeError, yaml.YAMLError, ValidationError) as e:
        raise CatalogError(f"Invalid catalog {source}: {e}") from e


class CatalogProvider:
    """Name -> descriptor lookup over the merged catalog.

    The loaded catalog consists of the built-in System category, the
    remote document's categories and every document found in the local
    repository directory, restricted to extensions that offer an image for
    the engine's architecture.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        repos_dir: Optional[Path] = None,
        manager_name: str = "dockhand",
        catalog_name: str = "dockhand-catalog",
        timeout: int = 30,
    ):
        """Initialize catalog provider.

        Args:
            url: Remote catalog document (None to use local files only)
            repos_dir: Directory holding extra local catalog documents
            manager_name: Name Dockhand itself is listed under
            catalog_name: Name the catalog is listed under
            timeout: HTTP timeout in seconds
        """
        self.url = url
        self.repos_dir = Path(repos_dir) if repos_dir else None
        self.manager_name = manager_name
        self.catalog_name = catalog_name
        self.timeout = timeout

        self.version: Optional[str] = None
        self._categories: List[CatalogCategory] = []
        self._index: Dict[str, ExtensionDescriptor] = {}

    @property
    def loaded(self) -> bool:
        return bool(self._categories)

    def system_category(self) -> CatalogCategory:
        return CatalogCategory(
            display_name=SYSTEM_CATEGORY,
            extensions=[
                ExtensionDescriptor(
                    name=self.manager_name,
                    display_name="Extension Manager",
                    description="Installs, updates and supervises extensions",
                ),
                ExtensionDescriptor(
                    name=self.catalog_name,
                    display_name="Extension Catalog",
                    description="Catalog of (community developed) extensions",
                ),
            ],
        )

    # ==================== Refresh ====================

    async def refresh(self, arch: str) -> bool:
        """Fetch the remote document and reload the catalog if it changed.

        A remote document replaces the loaded catalog only when its version
        differs from the loaded one and is at least ``MIN_CATALOG_VERSION``.
        The first refresh always loads.

        Args:
            arch: Engine architecture to filter extensions by

        Returns:
            True if the catalog was (re)loaded

        Raises:
            CatalogError: Remote document unreachable or invalid
        """
        if self.url:
            document = parse_document(await self.fetch(), self.url)
        else:
            document = CatalogDocument()

        changed = not self.loaded or (
            document.version != self.version
            and version_key(document.version) >= version_key(MIN_CATALOG_VERSION)
        )
        if not changed:
            logger.info(f"Extension catalog already up to date (v{self.version})")
            return False

        await self.load(document, arch)
        return True

    @retry(max_attempts=3, delay=2.0, exceptions=(requests.RequestException,))
    async def fetch(self) -> str:
        """Download the remote catalog document."""
        logger.debug(f"Fetching catalog from {self.url}")
        response = await asyncio.to_thread(requests.get, self.url, timeout=self.timeout)
        if response.status_code == 404:
            raise CatalogError(f"Catalog document not found at {self.url}")
        response.raise_for_status()
        return response.text

    async def load(self, document: CatalogDocument, arch: str) -> None:
        """Replace the loaded catalog with ``document`` plus local files."""
        categories: List[CatalogCategory] = [self.system_category()]
        _merge(categories, document.categories, arch)

        for local in await asyncio.to_thread(self._read_local_documents):
            _merge(categories, local.categories, arch)

        self.version = document.version
        self._categories = categories
        self._index = {
            extension.name: extension
            for category in categories
            for extension in category.extensions
        }
        logger.info(f"Extension catalog loaded (v{self.version}): {len(self._index)} entries")

    def _read_local_documents(self) -> List[CatalogDocument]:
        if not self.repos_dir or not self.repos_dir.is_dir():
            return []

        documents = []
        files = sorted(
            path for pattern in LOCAL_CATALOG_PATTERNS for path in self.repos_dir.glob(pattern)
        )
        for path in files:
            try:
                documents.append(parse_document(path.read_text(), path.name))
            except CatalogError as e:
                logger.warning(f"Skipping local catalog {path}: {e}")
        return documents

    # ==================== Queries ====================

    def lookup(self, name: str) -> Optional[ExtensionDescriptor]:
        return self._index.get(name)

    def categories(self) -> List[str]:
        return [category.display_name for category in self._categories if category.display_name]

    def extensions_by_category(self, index: int) -> List[CatalogEntry]:
        """Titled extensions of one category, sorted by title.

        Raises:
            CatalogError: No category at ``index``
        """
        if not 0 <= index < len(self._categories):
            raise CatalogError(f"No catalog category #{index}")

        entries = [
            CatalogEntry(title=extension.display_name, name=extension.name)
            for extension in self._categories[index].extensions
            if extension.display_name
        ]
        return sorted(entries, key=lambda entry: entry.title.lower())

    def names(self) -> List[str]:
        return list(self._index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'categories': [category.model_dump(exclude_none=True) for category in self._categories],
        }


def _merge(base: List[CatalogCategory], additions: List[CatalogCategory], arch: str) -> None:
    """Merge categories into ``base`` by display name, dropping other-arch extensions."""
    for category in additions:
        extensions = [e for e in category.extensions if e.supports(arch)]
        if not extensions:
            continue

        for i, existing in enumerate(base):
            if existing.display_name == category.display_name:
                base[i] = CatalogCategory(
                    display_name=existing.display_name,
                    extensions=existing.extensions + extensions,
                )
                break
        else:
            base.append(CatalogCategory(display_name=category.display_name, extensions=extensions))
