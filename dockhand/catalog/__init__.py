"""Extension catalog: descriptor models and the catalog provider."""

from .models import (
    CatalogCategory,
    CatalogDocument,
    ExtensionDescriptor,
    ImageRef,
    ImageSpec,
    OptionField,
    OptionSchema,
    parse_image_ref,
)
from .provider import MIN_CATALOG_VERSION, SYSTEM_CATEGORY, CatalogEntry, CatalogProvider

__all__ = [
    "CatalogCategory",
    "CatalogDocument",
    "CatalogEntry",
    "CatalogProvider",
    "ExtensionDescriptor",
    "ImageRef",
    "ImageSpec",
    "MIN_CATALOG_VERSION",
    "OptionField",
    "OptionSchema",
    "SYSTEM_CATEGORY",
    "parse_image_ref",
]
