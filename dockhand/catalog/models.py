"""Extension descriptor models as published in the catalog."""
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dockhand.engine.config_builder import ExtensionOptions


class ImageRef(NamedTuple):
    """A parsed ``[registry/][user/]repo[:tag]`` reference."""

    repository: str
    tag: Optional[str]

    @property
    def name(self) -> str:
        """Last path segment of the repository; doubles as extension name."""
        return self.repository.rsplit('/', 1)[-1]

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}" if self.tag else self.repository


def parse_image_ref(ref: str) -> ImageRef:
    """Split an image reference into repository and tag.

    A colon only separates a tag when it follows the last slash, so
    registry ports (``host:5000/repo``) are kept in the repository.
    """
    ref = ref.split('@', 1)[0]
    last_slash = ref.rfind('/')
    colon = ref.rfind(':')
    if colon > last_slash:
        return ImageRef(ref[:colon], ref[colon + 1:] or None)
    return ImageRef(ref, None)


class OptionField(NamedTuple):
    """One configurable option: identifying key, default value, and title."""

    key: str
    default: str
    title: str


def _split_option(raw: str) -> tuple:
    value, _, title = raw.partition(':')
    return value, title or value


class OptionSchema(BaseModel):
    """Declared install options.

    Catalog entries encode each option as ``"<value>:<title>"``:

    - env: ``{VAR: "default:Title"}``
    - devices: ``["/dev/path:Title"]``, the device path inside the container,
      which is also the default host device
    - binds: ``["/container/path:Title"]``, with no default host path
    """

    model_config = ConfigDict(frozen=True, extra='ignore')

    env: Dict[str, str] = Field(default_factory=dict)
    devices: List[str] = Field(default_factory=list)
    binds: List[str] = Field(default_factory=list)

    def env_fields(self) -> List[OptionField]:
        fields = []
        for var, raw in self.env.items():
            default, title = _split_option(raw)
            fields.append(OptionField(var, default, title))
        return fields

    def device_fields(self) -> List[OptionField]:
        return [OptionField(path, path, title) for path, title in map(_split_option, self.devices)]

    def bind_fields(self) -> List[OptionField]:
        return [OptionField(path, "", title) for path, title in map(_split_option, self.binds)]

    def default_options(self) -> ExtensionOptions:
        """Options to install with when the user supplies none."""
        return ExtensionOptions(
            env={f.key: f.default for f in self.env_fields() if f.default},
            devices={f.default: f.key for f in self.device_fields() if f.key},
        )


class ImageSpec(BaseModel):
    """Container image of an extension.

    Attributes:
        repo: Image repository (``user/name``)
        tags: Engine architecture (``amd64``, ``arm64``...) -> tag
        config: Engine API create-config template
        binds: Container paths of persistent bind files
        options: Declared install options
    """

    model_config = ConfigDict(frozen=True, extra='ignore')

    repo: str
    tags: Dict[str, str] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
    binds: List[str] = Field(default_factory=list)
    options: Optional[OptionSchema] = None

    @field_validator('repo')
    @classmethod
    def validate_repo(cls, v):
        if not v or ':' in v.rsplit('/', 1)[-1]:
            raise ValueError(f"Image repo must be a repository without tag, got: {v!r}")
        return v

    def tag_for(self, arch: str) -> Optional[str]:
        return self.tags.get(arch)

    def reference(self, arch: str) -> Optional[ImageRef]:
        tag = self.tag_for(arch)
        return ImageRef(self.repo, tag) if tag else None


class ExtensionDescriptor(BaseModel):
    """Immutable catalog entry of one extension."""

    model_config = ConfigDict(frozen=True, extra='ignore')

    name: str
    display_name: Optional[str] = None
    author: Optional[str] = None
    packager: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    image: Optional[ImageSpec] = None

    @model_validator(mode='before')
    @classmethod
    def derive_name(cls, data: Any) -> Any:
        """The image repository determines the name of image-backed entries."""
        if isinstance(data, dict):
            image = data.get('image')
            repo = image.get('repo') if isinstance(image, dict) else getattr(image, 'repo', None)
            if repo:
                data = dict(data)
                data['name'] = parse_image_ref(repo).name
        return data

    def supports(self, arch: str) -> bool:
        return self.image is None or bool(self.image.tag_for(arch))

    @property
    def title(self) -> str:
        return self.display_name or self.name


class CatalogCategory(BaseModel):
    model_config = ConfigDict(extra='ignore')

    display_name: str
    extensions: List[ExtensionDescriptor] = Field(default_factory=list)


class CatalogDocument(BaseModel):
    """A catalog source: a versioned list of categories."""

    model_config = ConfigDict(extra='ignore')

    version: Optional[str] = None
    categories: List[CatalogCategory] = Field(default_factory=list)

    @model_validator(mode='before')
    @classmethod
    def accept_bare_category_list(cls, data: Any) -> Any:
        # Local catalog files may hold just the category list
        if isinstance(data, list):
            return {'categories': data}
        return data
