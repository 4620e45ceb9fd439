"""Registry access under per-build credentials

Credentials are resolved from the image pull secrets of a Kubernetes service
account with ``kubectl`` and handed to ``skopeo`` through a short lived auth
file. Nothing is cached between calls: secrets may change between two builds
and a keychain must never leak from one namespace into another.
"""

import base64
import binascii
import contextlib
import json
import logging
import os
import re
import tempfile
import threading
import time

from dataclasses import dataclass, field
from datetime import datetime, timezone
from subprocess import PIPE, CompletedProcess, Popen, TimeoutExpired
from typing import Any, Final, Iterator

logger = logging.getLogger("cnb-resolve.registry")

SKOPEO: Final = os.environ.get("CNB_RESOLVE_SKOPEO", "skopeo")
KUBECTL: Final = os.environ.get("CNB_RESOLVE_KUBECTL", "kubectl")

DEFAULT_REGISTRY: Final = "index.docker.io"
DEFAULT_TAG: Final = "latest"

SECRET_TYPE_DOCKER_CONFIG_JSON: Final = "kubernetes.io/dockerconfigjson"
SECRET_TYPE_DOCKER_CFG: Final = "kubernetes.io/dockercfg"

_COMPONENT: Final = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPOSITORY_RE: Final = re.compile(rf"^{_COMPONENT}(?:/{_COMPONENT})*$")
_TAG_RE: Final = re.compile(r"^\w[\w.-]{0,127}$")
_DIGEST_RE: Final = re.compile(r"^(?:sha256:[0-9a-f]{64}|sha512:[0-9a-f]{128})$")
_REGISTRY_RE: Final = re.compile(r"^[a-zA-Z0-9.-]+(?::[0-9]+)?$")
_FRACTION_RE: Final = re.compile(r"(\.\d{6})\d+")

# skopeo reports a missing image in several ways depending on the registry
_NOT_FOUND_MARKERS: Final = ("manifest unknown", "name unknown", "not found")

# how often a running command checks the cancel event
POLL_INTERVAL: Final = 0.2


class InvalidReferenceError(ValueError):
    """An image reference cannot be parsed"""


class KeychainError(RuntimeError):
    """Registry credentials cannot be resolved"""


class RegistryError(RuntimeError):
    """The registry cannot be queried"""


class ImageNotFoundError(RegistryError):
    """The registry does not have the requested image"""


class CommandCancelled(RuntimeError):
    """A registry or cluster command was killed because the caller cancelled it"""


def run(cmd: list[str], timeout: float | None = None, cancel: threading.Event | None = None) -> CompletedProcess:
    """Run a command to completion and capture its text output

    :param cmd: list[str], the command and its arguments.
    :param timeout: seconds after which the command is killed and
        ``subprocess.TimeoutExpired`` is raised.
    :param cancel: optional event. When it is set, the command is killed and
        ``CommandCancelled`` is raised.
    :return: the completed process, with stdout and stderr.
    """
    if cancel is not None and cancel.is_set():
        raise CommandCancelled(f"{cmd[0]} is cancelled")
    deadline = None if timeout is None else time.monotonic() + timeout
    with Popen(cmd, stdout=PIPE, stderr=PIPE, text=True) as proc:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                break
            except TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    proc.kill()
                    proc.communicate()
                    raise CommandCancelled(f"{cmd[0]} is cancelled")
                if deadline is not None and time.monotonic() >= deadline:
                    proc.kill()
                    proc.communicate()
                    raise TimeoutExpired(cmd, timeout)
    return CompletedProcess(cmd, proc.returncode, stdout, stderr)


@dataclass(frozen=True)
class ImageReference:
    """A parsed ``[registry/]repository[:tag][@digest]`` reference"""

    registry: str
    repository: str
    tag: str = ""
    digest: str = ""

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """Parse an image reference

        Short Docker Hub names are normalized, e.g. ``ubuntu`` becomes
        ``index.docker.io/library/ubuntu``.
        """
        name, tag, digest = reference.strip(), "", ""
        if "@" in name:
            name, digest = name.split("@", 1)
            if not _DIGEST_RE.match(digest):
                raise InvalidReferenceError(f"invalid digest in image reference {reference!r}")

        # a colon after the last slash separates the tag, other colons belong to a
        # registry port
        last_slash = name.rfind("/")
        colon = name.rfind(":")
        if colon > last_slash:
            name, tag = name[:colon], name[colon + 1 :]
            if not _TAG_RE.match(tag):
                raise InvalidReferenceError(f"invalid tag in image reference {reference!r}")

        registry = DEFAULT_REGISTRY
        parts = name.split("/", 1)
        if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
            registry, name = parts
            if not _REGISTRY_RE.match(registry):
                raise InvalidReferenceError(f"invalid registry in image reference {reference!r}")
        if registry == "docker.io":
            registry = DEFAULT_REGISTRY
        if registry == DEFAULT_REGISTRY and "/" not in name:
            name = f"library/{name}"

        if not _REPOSITORY_RE.match(name):
            raise InvalidReferenceError(f"invalid repository in image reference {reference!r}")
        return cls(registry=registry, repository=name, tag=tag, digest=digest)

    @property
    def context(self) -> str:
        """Return the repository without tag or digest"""
        return f"{self.registry}/{self.repository}"

    @property
    def identifier(self) -> str:
        """Return the digest, or the tag if the reference is not digest anchored"""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def pinned(self) -> str:
        """Return the reference skopeo is asked for

        skopeo does not accept a tag and a digest together. The digest wins.
        """
        if self.digest:
            return f"{self.context}@{self.digest}"
        return f"{self.context}:{self.identifier}"

    def __str__(self) -> str:
        s = self.context
        if self.tag:
            s += f":{self.tag}"
        if self.digest:
            s += f"@{self.digest}"
        return s


@dataclass(frozen=True)
class SecretRef:
    """Identity whose pull secrets are used to access a registry"""

    namespace: str
    service_account: str = ""
    image_pull_secrets: tuple[str, ...] = ()


@dataclass(frozen=True)
class Keychain:
    """Registry credentials, keyed by registry host

    Entries follow the containers auth.json format, ``{"auth": base64(user:password)}``.
    """

    auths: dict[str, dict[str, str]] = field(default_factory=dict)

    def resolve(self, registry: str) -> dict[str, str] | None:
        if registry == DEFAULT_REGISTRY:
            registry = "docker.io"
        return self.auths.get(registry)

    @contextlib.contextmanager
    def authfile(self) -> Iterator[str]:
        """Write the credentials to a private auth file that exists only inside the block"""
        fd, path = tempfile.mkstemp(prefix="auth-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"auths": self.auths}, f)
            yield path
        finally:
            os.unlink(path)


def _normalize_registry_key(key: str) -> str:
    """Reduce a docker config key to a registry host

    Legacy keys look like ``https://index.docker.io/v1/``.
    """
    host = key
    if "://" in host:
        host = host.split("://", 1)[1].split("/", 1)[0]
    if host in ("index.docker.io", "registry-1.docker.io"):
        host = "docker.io"
    return host


def _normalize_auth_entry(entry: dict[str, Any]) -> dict[str, str]:
    if entry.get("auth"):
        return {"auth": entry["auth"]}
    username, password = entry.get("username"), entry.get("password")
    if username is None or password is None:
        raise ValueError("neither auth nor username and password is set")
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return {"auth": token}


def parse_pull_secret(secret: dict[str, Any]) -> dict[str, dict[str, str]]:
    """Extract registry credentials from a Secret object

    :param secret: dict, the Secret as returned by ``kubectl get secret -o json``.
    :return: a mapping from registry host to auth entry.
    :raises KeychainError: if the secret is not an image pull secret or is malformed.
    """
    metadata = secret.get("metadata") or {}
    secret_name = f"{metadata.get('namespace', '')}/{metadata.get('name', '')}"
    secret_type = secret.get("type")
    data = secret.get("data") or {}
    try:
        if secret_type == SECRET_TYPE_DOCKER_CONFIG_JSON:
            config = json.loads(base64.b64decode(data[".dockerconfigjson"], validate=True))
            auths = config.get("auths") or {}
        elif secret_type == SECRET_TYPE_DOCKER_CFG:
            auths = json.loads(base64.b64decode(data[".dockercfg"], validate=True))
        else:
            raise KeychainError(f"secret {secret_name} of type {secret_type} is not an image pull secret")
        return {_normalize_registry_key(k): _normalize_auth_entry(v) for k, v in auths.items()}
    except (KeyError, ValueError, TypeError, AttributeError, binascii.Error) as e:
        raise KeychainError(f"malformed image pull secret {secret_name}: {e}") from e


class KeychainFactory:
    """Build keychains from Kubernetes service accounts and pull secrets"""

    def __init__(self, kubectl: str = KUBECTL, timeout: float | None = None) -> None:
        self.kubectl = kubectl
        self.timeout = timeout

    def keychain_for_secret_ref(self, secret_ref: SecretRef, cancel: threading.Event | None = None) -> Keychain:
        """Resolve the pull secrets of secret_ref into a keychain

        Secrets listed explicitly come first, followed by the ``imagePullSecrets``
        of the service account. For a registry present in several secrets, the
        first one wins.

        :param cancel: optional event. When it is set, the running ``kubectl``
            command is killed and ``CommandCancelled`` is raised.
        """
        names = list(secret_ref.image_pull_secrets)
        if secret_ref.service_account:
            sa = self._get("serviceaccount", secret_ref.service_account, secret_ref.namespace, cancel)
            names.extend(item["name"] for item in sa.get("imagePullSecrets") or [] if item.get("name"))

        auths: dict[str, dict[str, str]] = {}
        for name in dict.fromkeys(names):
            secret = self._get("secret", name, secret_ref.namespace, cancel)
            for registry, entry in parse_pull_secret(secret).items():
                auths.setdefault(registry, entry)

        logger.debug(
            "keychain for %s/%s has credentials for %r",
            secret_ref.namespace,
            secret_ref.service_account,
            sorted(auths),
        )
        return Keychain(auths=auths)

    def _get(self, kind: str, name: str, namespace: str, cancel: threading.Event | None) -> dict[str, Any]:
        cmd = [self.kubectl, "get", kind, name, "--namespace", namespace, "--output", "json"]
        logger.debug("get %s: %r", kind, cmd)
        proc = run(cmd, timeout=self.timeout, cancel=cancel)
        if proc.returncode != 0:
            raise KeychainError(f"unable to get {kind} {namespace}/{name}: {proc.stderr.strip()}")
        try:
            return json.loads(proc.stdout)
        except json.JSONDecodeError as e:
            raise KeychainError(f"unable to decode {kind} {namespace}/{name}: {e}") from e


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as written into image configs

    Fractions beyond microseconds are truncated. A timestamp without offset is
    taken as UTC.
    """
    value = _FRACTION_RE.sub(r"\1", value.strip())
    if value[-1:] in ("Z", "z"):
        value = value[:-1] + "+00:00"
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class RemoteImage:
    """An image fetched from a registry

    :ivar reference: the digest anchored reference the config was read from.
    :ivar config: the image config, as returned by ``skopeo inspect --config``.
    """

    reference: ImageReference
    config: dict[str, Any]

    @property
    def digest(self) -> str:
        return self.reference.digest

    @property
    def labels(self) -> dict[str, str]:
        return (self.config.get("config") or {}).get("Labels") or {}

    @property
    def created_at(self) -> datetime:
        created = self.config.get("created")
        if not created:
            raise ValueError(f"image {self.reference} has no creation time")
        return parse_timestamp(created)


class ImageFetcher:
    """Fetch images with skopeo"""

    def __init__(self, skopeo: str = SKOPEO, retry_times: int = 0, timeout: float | None = None) -> None:
        self.skopeo = skopeo
        self.retry_times = retry_times
        self.timeout = timeout

    def fetch(
        self, keychain: Keychain, repo_name: str, cancel: threading.Event | None = None
    ) -> tuple[RemoteImage, str]:
        """Fetch an image

        A tag is resolved to a digest once, and the image config is then read
        through that digest, so the returned image and identifier always
        describe the same image.

        :param keychain: credentials used for this fetch only.
        :param repo_name: str, an image reference by tag or by digest.
        :param cancel: optional event. When it is set, the running ``skopeo``
            command is killed and ``CommandCancelled`` is raised.
        :return: a 2 elements tuple, the fetched image and its identifier in the
            form ``repository@digest``.
        """
        ref = ImageReference.parse(repo_name)
        if keychain.resolve(ref.registry) is None:
            logger.debug("no credentials for registry %s, accessing %s anonymously", ref.registry, ref)
        with keychain.authfile() as authfile:
            digest = ref.digest
            if not digest:
                digest = self._inspect(["--format", "{{.Digest}}", "--no-tags"], ref.pinned, authfile, cancel)
            pinned = ImageReference(ref.registry, ref.repository, digest=digest)
            raw_config = self._inspect(["--config"], pinned.pinned, authfile, cancel)
        try:
            config = json.loads(raw_config)
        except json.JSONDecodeError as e:
            raise RegistryError(f"unable to decode config of image {pinned}: {e}") from e
        return RemoteImage(reference=pinned, config=config), pinned.pinned

    def _inspect(self, flags: list[str], image: str, authfile: str, cancel: threading.Event | None) -> str:
        cmd = [self.skopeo, "inspect", *flags, "--authfile", authfile]
        if self.retry_times:
            cmd.extend(["--retry-times", str(self.retry_times)])
        cmd.append(f"docker://{image}")
        logger.debug("inspect image: %r", cmd)
        proc = run(cmd, timeout=self.timeout, cancel=cancel)
        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            if any(marker in stderr.lower() for marker in _NOT_FOUND_MARKERS):
                raise ImageNotFoundError(f"image {image} is not found: {stderr}")
            raise RegistryError(f"unable to inspect image {image}: {stderr}")
        return proc.stdout.strip()
