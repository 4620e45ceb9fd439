"""Decode buildpacks metadata of application and builder images

Cloud Native Buildpacks record what produced an image in a few OCI labels.
``RemoteMetadataRetriever`` fetches an image with the credentials of the build
and turns those labels into the records consumed by build and builder status
updates.
"""

import json
import logging
import threading

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Final, Protocol

from packageurl import PackageURL

from cnbresolve.registry import (
    ImageReference,
    Keychain,
    KeychainFactory,
    RemoteImage,
    SecretRef,
)

logger = logging.getLogger("cnb-resolve.cnb")

STACK_ID_LABEL: Final = "io.buildpacks.stack.id"
BUILD_METADATA_LABEL: Final = "io.buildpacks.build.metadata"
LAYER_METADATA_LABEL: Final = "io.buildpacks.lifecycle.metadata"
BUILDER_METADATA_LABEL: Final = "io.buildpacks.builder.metadata"
BUILDPACK_ORDER_LABEL: Final = "io.buildpacks.buildpack.order"

DEFAULT_SERVICE_ACCOUNT: Final = "default"


class LabelError(ValueError):
    """A label is missing or does not hold the expected document"""


class ImageFetcher(Protocol):
    def fetch(
        self, keychain: Keychain, repo_name: str, cancel: threading.Event | None = None
    ) -> tuple[RemoteImage, str]: ...


@dataclass(frozen=True)
class BuildpackInfo:
    id: str
    version: str = ""
    homepage: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildpackInfo":
        return cls(id=data["id"], version=data.get("version", ""), homepage=data.get("homepage", ""))


@dataclass(frozen=True)
class BuildpackRef:
    """A buildpack in an order group"""

    id: str
    version: str = ""
    optional: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildpackRef":
        return cls(
            id=data["id"], version=data.get("version", ""), optional=bool(data.get("optional", False))
        )


@dataclass(frozen=True)
class OrderEntry:
    """An alternative group of buildpacks, detection tries them in sequence"""

    group: tuple[BuildpackRef, ...] = ()


@dataclass(frozen=True)
class BuiltImageStack:
    # always repository@digest
    run_image: str
    id: str


@dataclass(frozen=True)
class BuiltImage:
    identifier: str
    completed_at: datetime
    buildpack_metadata: tuple[BuildpackInfo, ...]
    stack: BuiltImageStack

    def purl(self) -> str:
        repository, digest = self.identifier.split("@", 1)
        return PackageURL(
            type="oci",
            name=repository.rsplit("/", 1)[-1],
            version=digest,
            qualifiers={"repository_url": repository},
        ).to_string()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["completed_at"] = self.completed_at.isoformat()
        data["purl"] = self.purl()
        return data


@dataclass(frozen=True)
class BuilderRecord:
    identifier: str
    stack_id: str
    run_image: str
    buildpacks: tuple[BuildpackInfo, ...] = ()
    order: tuple[OrderEntry, ...] = ()
    lifecycle_version: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RegistryCache:
    tag: str


@dataclass(frozen=True)
class VolumeCache:
    size: str = ""


@dataclass(frozen=True)
class BuildRequest:
    """The parts of a Build the metadata retriever needs"""

    namespace: str
    tag: str
    service_account: str = DEFAULT_SERVICE_ACCOUNT
    cache: RegistryCache | VolumeCache | None = None

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> "BuildRequest":
        """Read a Build resource manifest"""
        metadata = manifest.get("metadata") or {}
        spec = manifest.get("spec") or {}
        cache_spec = spec.get("cache") or {}
        cache: RegistryCache | VolumeCache | None = None
        if (cache_spec.get("registry") or {}).get("tag"):
            cache = RegistryCache(tag=cache_spec["registry"]["tag"])
        elif "volume" in cache_spec:
            cache = VolumeCache(size=str((cache_spec["volume"] or {}).get("size", "")))
        return cls(
            namespace=metadata.get("namespace", "default"),
            tag=spec["tag"],
            service_account=spec.get("serviceAccountName") or DEFAULT_SERVICE_ACCOUNT,
            cache=cache,
        )

    @property
    def secret_ref(self) -> SecretRef:
        return SecretRef(namespace=self.namespace, service_account=self.service_account)

    def need_registry_cache(self) -> bool:
        return isinstance(self.cache, RegistryCache) and bool(self.cache.tag)


@dataclass(frozen=True)
class BuilderRequest:
    namespace: str
    image: str
    service_account: str = ""
    image_pull_secrets: tuple[str, ...] = field(default_factory=tuple)

    @property
    def secret_ref(self) -> SecretRef:
        return SecretRef(
            namespace=self.namespace,
            service_account=self.service_account,
            image_pull_secrets=self.image_pull_secrets,
        )


def get_string_label(image: RemoteImage, name: str) -> str:
    value = image.labels.get(name)
    if value is None:
        raise LabelError(f"could not find label {name}")
    return value


def get_label(image: RemoteImage, name: str) -> Any:
    """Return the JSON document stored in a label"""
    try:
        return json.loads(get_string_label(image, name))
    except json.JSONDecodeError as e:
        raise LabelError(f"label {name} is not valid JSON: {e}") from e


def _buildpacks(items: Any, label: str) -> tuple[BuildpackInfo, ...]:
    try:
        return tuple(BuildpackInfo.from_dict(item) for item in items or [])
    except (KeyError, TypeError, AttributeError) as e:
        raise LabelError(f"label {label} has malformed buildpacks: {e!r}") from e


def _order(items: Any, label: str) -> tuple[OrderEntry, ...]:
    try:
        return tuple(
            OrderEntry(group=tuple(BuildpackRef.from_dict(ref) for ref in entry.get("group") or []))
            for entry in items or []
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise LabelError(f"label {label} has malformed order: {e!r}") from e


def _document(image: RemoteImage, name: str) -> dict[str, Any]:
    doc = get_label(image, name)
    if not isinstance(doc, dict):
        raise LabelError(f"label {name} is not a JSON object")
    return doc


def _nested(doc: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if not isinstance(doc, dict):
            return None
        doc = doc.get(key)  # type: ignore
    return doc


def read_built_image(app_image: RemoteImage, app_image_id: str) -> BuiltImage:
    """Assemble the built image record from the labels of an application image

    The stack ID label is informational: when it cannot be read the stack ID is
    left empty. Build and layer metadata are required.
    """
    try:
        stack_id = get_string_label(app_image, STACK_ID_LABEL)
    except LabelError:
        logger.debug("image %s has no stack ID", app_image_id)
        stack_id = ""

    build_metadata = _document(app_image, BUILD_METADATA_LABEL)
    buildpacks = _buildpacks(build_metadata.get("buildpacks"), BUILD_METADATA_LABEL)

    layer_metadata = _document(app_image, LAYER_METADATA_LABEL)
    run_image_reference = _nested(layer_metadata, "runImage", "reference")
    # platform API 0.12 moved the run image name from stack into runImage
    base_image = _nested(layer_metadata, "stack", "runImage", "image") or _nested(
        layer_metadata, "runImage", "image"
    )
    if not all(isinstance(v, str) and v for v in (run_image_reference, base_image)):
        raise LabelError(f"label {LAYER_METADATA_LABEL} does not describe the run image")

    completed_at = app_image.created_at

    run_image_ref = ImageReference.parse(run_image_reference)
    base_image_ref = ImageReference.parse(base_image)
    if not run_image_ref.digest:
        raise LabelError(f"run image reference {run_image_reference} is not anchored by a digest")

    return BuiltImage(
        identifier=app_image_id,
        completed_at=completed_at,
        buildpack_metadata=buildpacks,
        stack=BuiltImageStack(
            run_image=f"{base_image_ref.context}@{run_image_ref.digest}",
            id=stack_id,
        ),
    )


def read_builder(builder_image: RemoteImage, builder_image_id: str) -> BuilderRecord:
    """Assemble the builder record from the labels of a builder image"""
    stack_id = get_string_label(builder_image, STACK_ID_LABEL)
    metadata = _document(builder_image, BUILDER_METADATA_LABEL)

    if BUILDPACK_ORDER_LABEL in builder_image.labels:
        order = _order(get_label(builder_image, BUILDPACK_ORDER_LABEL), BUILDPACK_ORDER_LABEL)
    else:
        order = _order(metadata.get("order"), BUILDER_METADATA_LABEL)

    return BuilderRecord(
        identifier=builder_image_id,
        stack_id=stack_id,
        run_image=_nested(metadata, "stack", "runImage", "image") or "",
        buildpacks=_buildpacks(metadata.get("buildpacks"), BUILDER_METADATA_LABEL),
        order=order,
        lifecycle_version=_nested(metadata, "lifecycle", "version") or "",
    )


class RemoteMetadataRetriever:
    """Fetch images under the identity of a build or builder and decode their metadata

    A keychain is resolved for every call and dropped afterwards. Every method
    takes an optional cancel event that aborts the running registry or cluster
    command with ``CommandCancelled``.
    """

    def __init__(self, keychain_factory: KeychainFactory, image_fetcher: ImageFetcher) -> None:
        self.keychain_factory = keychain_factory
        self.image_fetcher = image_fetcher

    def get_built_image(self, build: BuildRequest, cancel: threading.Event | None = None) -> BuiltImage:
        try:
            keychain = self.keychain_factory.keychain_for_secret_ref(build.secret_ref, cancel=cancel)
        except Exception as e:
            e.add_note("unable to create app image keychain")
            raise

        try:
            app_image, app_image_id = self.image_fetcher.fetch(keychain, build.tag, cancel=cancel)
        except Exception as e:
            e.add_note("unable to fetch app image")
            raise

        return read_built_image(app_image, app_image_id)

    def get_cache_image(self, build: BuildRequest, cancel: threading.Event | None = None) -> str:
        """Return the identifier of the registry cache image, or "" without a registry cache"""
        if not build.need_registry_cache():
            return ""

        keychain = self.keychain_factory.keychain_for_secret_ref(build.secret_ref, cancel=cancel)
        try:
            _, cache_image_id = self.image_fetcher.fetch(keychain, build.cache.tag, cancel=cancel)  # type: ignore
        except Exception as e:
            e.add_note("unable to fetch cache image")
            raise
        return cache_image_id

    def get_builder(self, builder: BuilderRequest, cancel: threading.Event | None = None) -> BuilderRecord:
        try:
            keychain = self.keychain_factory.keychain_for_secret_ref(builder.secret_ref, cancel=cancel)
        except Exception as e:
            e.add_note("unable to create builder image keychain")
            raise

        try:
            builder_image, builder_image_id = self.image_fetcher.fetch(keychain, builder.image, cancel=cancel)
        except Exception as e:
            e.add_note("unable to fetch builder image")
            raise

        return read_builder(builder_image, builder_image_id)
