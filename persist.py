#!/usr/bin/env python3
"""Persist every derivative of a model-translation job into a local directory.

Phases:
A) Fetch the job manifest and check that translation has finished.
B) Walk the derivative tree, applying role/target filters, and seed the registry.
C) Drain the registry: stream each derivative to disk once, open recognized
   containers and feed the assets they list back into the registry.
D) Report final discovered/completed counts or the first failure.
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import gzip
import json
import logging
import os
import posixpath
import time
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Protocol
from urllib.parse import quote

import aiohttp
import yaml
from tqdm import tqdm

API_BASE = "https://developer.api.autodesk.com/modelderivative/v2"
ACCESS_TOKEN_ENV = "FORGE_ACCESS_TOKEN"
PROPERTY_DATABASE_ROLE = "Autodesk.CloudPlatform.PropertyDatabase"
RESERVED_URI_CHARS = frozenset(":?*<>|")
ARCHIVE_MANIFEST_NAME = "manifest.json"
SIBLING_MANIFEST_NAME = "manifest.json.gz"


class PersistenceError(Exception):
    """Base class for failures while persisting derivatives."""


class DerivativeFetchError(PersistenceError):
    """A derivative (or the job manifest) could not be retrieved."""


class ContainerParseError(PersistenceError):
    """A fetched container or its nested manifest could not be read."""


class UnsafeReferenceError(PersistenceError):
    """A reference does not map to a path inside the output directory."""


class JobNotReadyError(PersistenceError):
    """The translation job has not finished successfully."""


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from config.yaml."""

    api_base: str = API_BASE
    access_token: str = ""
    output_dir: str = "output"
    excluded_roles: tuple[str, ...] = (PROPERTY_DATABASE_ROLE,)
    targets: tuple[str, ...] | None = None
    delay_sec: float = 0.0
    max_retries: int = 4
    timeout_sec: int = 60
    chunk_size: int = 65536

    def role_filter(self) -> RoleFilterConfig:
        return RoleFilterConfig(
            excluded_roles=frozenset(self.excluded_roles),
            targets=frozenset(self.targets) if self.targets is not None else None,
        )


@dataclass(frozen=True, slots=True)
class RoleFilterConfig:
    """Which manifest nodes the static tree walk may descend into."""

    excluded_roles: frozenset[str] = field(default_factory=lambda: frozenset({PROPERTY_DATABASE_ROLE}))
    targets: frozenset[str] | None = None


@dataclass(frozen=True, slots=True)
class ManifestNode:
    """One entry of the derivative tree returned by the manifest endpoint."""

    guid: str | None = None
    role: str | None = None
    urn: str | None = None
    children: tuple[ManifestNode, ...] | None = None


@dataclass(frozen=True, slots=True)
class TaskFailure:
    reference: str
    error: BaseException

    def __str__(self) -> str:
        return f"{self.reference}: {self.error}"


@dataclass(slots=True)
class PersistenceResult:
    """Outcome of one run() call."""

    discovered: int
    completed: int
    failures: list[TaskFailure] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failures

    @property
    def first_failure(self) -> TaskFailure | None:
        return self.failures[0] if self.failures else None

    @property
    def failure_reason(self) -> str | None:
        if self.error is not None:
            return f"Aborted: {self.error!r}"
        if self.failures:
            return f"Failed to persist {self.failures[0]}"
        return None


class DerivativeSource(Protocol):
    """Anything that can stream the bytes of one derivative."""

    def iter_derivative(self, urn: str, reference: str) -> AsyncIterator[bytes]: ...


class ProgressSink(Protocol):
    discovered: int
    completed: int

    def on_discovered(self) -> None: ...

    def on_completed(self) -> None: ...

    def succeed(self) -> None: ...

    def fail(self, reason: str) -> None: ...


class ProgressReporter:
    """Live status line over the discovered/completed counters."""

    def __init__(self, enabled: bool = True) -> None:
        self.discovered = 0
        self.completed = 0
        self._bar = tqdm(total=0, bar_format="{desc}", disable=not enabled, leave=False)
        self._refresh()

    @property
    def status(self) -> str:
        return f"Processing: {self.completed} of {self.discovered} derivatives saved..."

    def _refresh(self) -> None:
        self._bar.set_description_str(self.status)

    def on_discovered(self) -> None:
        self.discovered += 1
        self._refresh()

    def on_completed(self) -> None:
        self.completed += 1
        self._refresh()

    def succeed(self) -> None:
        self._bar.close()
        logging.info("Done: %s of %s derivatives saved", self.completed, self.discovered)

    def fail(self, reason: str) -> None:
        self._bar.close()
        logging.error("%s (%s of %s derivatives saved)", reason, self.completed, self.discovered)


class RequestScheduler:
    """Ensure a minimum delay between request starts."""

    def __init__(self, delay_sec: float) -> None:
        self.delay_sec = max(0.0, delay_sec)
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    async def wait_turn(self) -> None:
        """Sleep as needed so requests are spaced by configured delay."""
        if self.delay_sec <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            wait_for = self._next_allowed - now
            if wait_for > 0:
                await asyncio.sleep(wait_for)
                now = time.monotonic()
            self._next_allowed = now + self.delay_sec


class ModelDerivativeClient:
    """Manifest and derivative download endpoints of the Model Derivative API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: Config,
        scheduler: RequestScheduler | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.scheduler = scheduler or RequestScheduler(config.delay_sec)

    def _headers(self) -> dict[str, str]:
        token = self.config.access_token or os.environ.get(ACCESS_TOKEN_ENV, "")
        return {"Authorization": f"Bearer {token}"} if token else {}

    def manifest_url(self, urn: str) -> str:
        return f"{self.config.api_base.rstrip('/')}/designdata/{quote(urn, safe='')}/manifest"

    def derivative_url(self, urn: str, reference: str) -> str:
        return f"{self.manifest_url(urn)}/{quote(reference, safe='')}"

    async def _get(self, url: str) -> aiohttp.ClientResponse:
        """GET url with retry/backoff on connection errors and 5xx. Caller releases the response."""
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.config.timeout_sec, sock_read=self.config.timeout_sec)
        for attempt in range(self.config.max_retries + 1):
            try:
                await self.scheduler.wait_turn()
                resp = await self.session.get(url, headers=self._headers(), timeout=timeout)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt == self.config.max_retries:
                    raise DerivativeFetchError(f"Request failed after retries: {url} ({exc})") from exc
            else:
                if 200 <= resp.status < 300:
                    return resp
                resp.release()
                if resp.status < 500 or attempt == self.config.max_retries:
                    raise DerivativeFetchError(f"HTTP {resp.status} for {url}")
                logging.warning("HTTP %s for %s, retrying", resp.status, url)
            await asyncio.sleep((2**attempt) * max(0.05, self.config.delay_sec))
        raise DerivativeFetchError(f"Request failed after retries: {url}")

    async def get_manifest(self, urn: str) -> dict[str, Any]:
        url = self.manifest_url(urn)
        resp = await self._get(url)
        try:
            data = await resp.read()
        finally:
            resp.release()
        obj = parse_json_bytes(data, url)
        if not isinstance(obj, dict):
            raise DerivativeFetchError(f"Manifest of {urn} is not a JSON object")
        return obj

    async def iter_derivative(self, urn: str, reference: str) -> AsyncIterator[bytes]:
        """Yield the body of one derivative in chunk_size pieces."""
        resp = await self._get(self.derivative_url(urn, reference))
        try:
            async for chunk in resp.content.iter_chunked(self.config.chunk_size):
                yield chunk
        finally:
            resp.release()


def parse_json_bytes(data: bytes | None, url: str) -> Any | None:
    """Parse JSON payload bytes safely."""
    if data is None:
        return None
    try:
        return json.loads(data.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logging.error("Invalid JSON at %s: %s", url, exc)
        return None


def split_csv(value: str | Iterable[str] | None) -> list[str] | None:
    """Split a comma-separated string (or list) into trimmed, non-empty items."""
    if value is None:
        return None
    items = value.split(",") if isinstance(value, str) else [str(v) for v in value]
    return [item.strip() for item in items if item.strip()]


def ensure_job_complete(manifest: dict[str, Any]) -> None:
    status = manifest.get("status")
    progress = manifest.get("progress")
    if status != "success" or progress != "complete":
        raise JobNotReadyError(f"Translation not finished (status={status}, progress={progress})")


def parse_manifest_nodes(obj: Any) -> list[ManifestNode]:
    """Convert a manifest response (or a raw list of nodes) into ManifestNode trees."""
    if isinstance(obj, dict):
        obj = obj.get("derivatives")
    if not isinstance(obj, list):
        return []

    nodes: list[ManifestNode] = []
    for item in obj:
        if not isinstance(item, dict):
            continue
        children = item.get("children")
        nodes.append(
            ManifestNode(
                guid=_str_or_none(item.get("guid")),
                role=_str_or_none(item.get("role")),
                urn=_str_or_none(item.get("urn")),
                children=tuple(parse_manifest_nodes(children)) if isinstance(children, list) else None,
            )
        )
    return nodes


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def walk(nodes: Iterable[ManifestNode], filter_config: RoleFilterConfig, submit: Callable[[str], Any], force: bool = False) -> None:
    """Submit the urn of every node that passes the role/target filter.

    A node whose GUID is targeted is included regardless of its role, and so
    are its immediate children. Below them, role filtering applies again
    unless a deeper node is itself targeted.
    """
    targets = filter_config.targets
    for node in nodes:
        targeted = targets is not None and node.guid in targets
        include = (
            node.guid is None
            or force
            or targeted
            or (targets is None and node.role not in filter_config.excluded_roles)
        )
        if not include:
            logging.debug("Skip node guid=%s role=%s", node.guid, node.role)
            continue
        if node.children is not None:
            walk(node.children, filter_config, submit, force=targeted)
        if node.urn is not None:
            submit(node.urn)


def derivative_reference(reference: str, relative_uri: str) -> str:
    """Resolve an asset URI against the directory of the container that listed it."""
    root, _, rest = reference.partition("/")
    directory = posixpath.dirname(rest)
    uri = relative_uri.replace("\\", "/").lstrip("/")
    return f"{root}/{posixpath.normpath(posixpath.join(directory, uri))}"


def local_path_for(output_dir: Path, reference: str) -> Path:
    """Map a reference to its file under output_dir, dropping the root segment."""
    _, _, rest = reference.partition("/")
    root = output_dir.resolve()
    target = (root / rest).resolve()
    if not rest or target == root or not target.is_relative_to(root):
        raise UnsafeReferenceError(f"Reference maps outside {output_dir}: {reference}")
    return target


def nested_references(manifest: dict[str, Any], reference: str) -> list[str]:
    """References for every path-safe asset listed in a nested manifest."""
    refs: list[str] = []
    for asset in manifest["assets"]:
        uri = asset.get("URI") if isinstance(asset, dict) else None
        if not isinstance(uri, str) or not uri:
            logging.warning("Skip asset without URI in manifest of %s", reference)
            continue
        if any(c in RESERVED_URI_CHARS for c in uri):
            logging.debug("Skip reserved asset URI: %s (from %s)", uri, reference)
            continue
        refs.append(derivative_reference(reference, uri))
    return refs


def parse_nested_manifest(data: bytes, origin: str) -> dict[str, Any]:
    try:
        obj = json.loads(data.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ContainerParseError(f"Invalid manifest JSON in {origin}: {exc}") from exc
    if not isinstance(obj, dict) or not isinstance(obj.get("assets"), list):
        raise ContainerParseError(f"Manifest in {origin} has no assets list")
    return obj


def read_archive_manifest(path: Path) -> dict[str, Any]:
    """Read the manifest.json entry of an SVF archive."""
    try:
        with zipfile.ZipFile(path) as archive:
            data = archive.read(ARCHIVE_MANIFEST_NAME)
    except KeyError as exc:
        raise ContainerParseError(f"{path} has no {ARCHIVE_MANIFEST_NAME} entry") from exc
    except zipfile.BadZipFile as exc:
        raise ContainerParseError(f"{path} is not a valid archive: {exc}") from exc
    # Corrupt, truncated, encrypted or unsupported entries.
    except (zlib.error, EOFError, NotImplementedError, RuntimeError) as exc:
        raise ContainerParseError(f"Cannot read {ARCHIVE_MANIFEST_NAME} in {path}: {exc!r}") from exc
    return parse_nested_manifest(data, str(path))


def decompress_manifest(raw: bytes, origin: str) -> dict[str, Any]:
    try:
        data = gzip.decompress(raw)
    except (OSError, EOFError, zlib.error) as exc:
        raise ContainerParseError(f"Cannot decompress {origin}: {exc}") from exc
    return parse_nested_manifest(data, origin)


class ContainerKind(enum.Enum):
    NONE = "none"
    ARCHIVE = "archive"
    GZIP_SIBLING = "gzip_sibling"


CONTAINER_EXTENSIONS = {
    ".svf": ContainerKind.ARCHIVE,
    ".f2d": ContainerKind.GZIP_SIBLING,
    ".f3d": ContainerKind.GZIP_SIBLING,
}


def classify_container(path: Path | str) -> ContainerKind:
    return CONTAINER_EXTENSIONS.get(Path(path).suffix.lower(), ContainerKind.NONE)


async def parse_archive_manifest(engine: DerivativePersistence, reference: str, local_path: Path) -> dict[str, Any] | None:
    return await asyncio.to_thread(read_archive_manifest, local_path)


async def parse_sibling_manifest(engine: DerivativePersistence, reference: str, local_path: Path) -> dict[str, Any] | None:
    """Stream the gzip manifest next to reference; it is neither registered nor saved."""
    sibling = derivative_reference(reference, SIBLING_MANIFEST_NAME)
    logging.debug("Reading sibling manifest: %s", sibling)
    chunks = [chunk async for chunk in engine.source.iter_derivative(engine.urn, sibling)]
    return await asyncio.to_thread(decompress_manifest, b"".join(chunks), sibling)


async def parse_nothing(engine: DerivativePersistence, reference: str, local_path: Path) -> dict[str, Any] | None:
    return None


ContainerParser = Callable[["DerivativePersistence", str, Path], Awaitable["dict[str, Any] | None"]]

CONTAINER_PARSERS: dict[ContainerKind, ContainerParser] = {
    ContainerKind.NONE: parse_nothing,
    ContainerKind.ARCHIVE: parse_archive_manifest,
    ContainerKind.GZIP_SIBLING: parse_sibling_manifest,
}

# Failures that stay local to one task; anything else aborts the run.
TASK_ERRORS = (PersistenceError, aiohttp.ClientError, asyncio.TimeoutError, OSError)


class TaskRegistry:
    """At-most-once scheduling of derivative fetches, keyed by reference.

    All mutation happens on the event loop thread, so insert-if-absent in
    submit() is atomic with respect to the tasks that call it.

    ``len()`` counts tasks still in flight; ``in`` tests every reference ever
    submitted, including completed and failed ones.
    """

    def __init__(self, worker: Callable[[str], Awaitable[None]], progress: ProgressSink) -> None:
        self._worker = worker
        self._progress = progress
        self._seen: set[str] = set()
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self.failures: list[TaskFailure] = []

    def __len__(self) -> int:
        return len(self._inflight)

    def __contains__(self, reference: object) -> bool:
        return reference in self._seen

    def submit(self, reference: str) -> bool:
        """Start a task for reference unless one was ever started. Return True if started."""
        if reference in self._seen:
            return False
        self._seen.add(reference)
        self._progress.on_discovered()
        self._inflight[reference] = asyncio.get_running_loop().create_task(self._run(reference))
        return True

    async def _run(self, reference: str) -> None:
        try:
            await self._worker(reference)
        except TASK_ERRORS as exc:
            logging.error("Error persisting %s: %s", reference, exc)
            self.failures.append(TaskFailure(reference, exc))
        finally:
            self._inflight.pop(reference, None)

    async def drain(self) -> None:
        """Wait until no task is in flight, including tasks submitted while waiting."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()))

    async def cancel(self) -> None:
        """Cancel every in-flight task and wait until all of them have settled."""
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class DerivativePersistence:
    """Fetch every derivative reachable from a manifest tree into output_dir."""

    def __init__(self, source: DerivativeSource, urn: str, output_dir: Path, progress: ProgressSink) -> None:
        self.source = source
        self.urn = urn
        self.output_dir = Path(output_dir)
        self.progress = progress
        self.registry = TaskRegistry(self.persist_derivative, progress)

    async def persist_derivative(self, reference: str) -> None:
        logging.debug("Fetching: %s", reference)
        out_path = local_path_for(self.output_dir, reference)
        out_path.parent.mkdir(parents=True, exist_ok=True)

        size = 0
        with out_path.open("wb") as fh:
            async for chunk in self.source.iter_derivative(self.urn, reference):
                fh.write(chunk)
                size += len(chunk)
        logging.debug("Saved to: %s (%s bytes)", out_path, size)
        self.progress.on_completed()

        manifest = await CONTAINER_PARSERS[classify_container(out_path)](self, reference, out_path)
        if manifest is None:
            return
        for nested in nested_references(manifest, reference):
            self.registry.submit(nested)


async def run(
    manifest_root: Iterable[ManifestNode],
    output_dir: Path | str,
    filter_config: RoleFilterConfig,
    *,
    source: DerivativeSource,
    urn: str,
    reporter: ProgressSink | None = None,
) -> PersistenceResult:
    """Persist all derivatives under manifest_root and report the outcome."""
    progress = reporter if reporter is not None else ProgressReporter()
    engine = DerivativePersistence(source, urn, Path(output_dir), progress)
    walk(manifest_root, filter_config, engine.registry.submit)

    error: BaseException | None = None
    try:
        await engine.registry.drain()
    except Exception as exc:  # noqa: BLE001
        logging.exception("Aborting derivative persistence")
        await engine.registry.cancel()
        error = exc

    result = PersistenceResult(
        discovered=progress.discovered,
        completed=progress.completed,
        failures=list(engine.registry.failures),
        error=error,
    )
    if result.ok:
        progress.succeed()
    else:
        progress.fail(result.failure_reason or "Failed")
    return result


def load_config(config_path: Path | None) -> Config:
    """Load config.yaml and apply defaults for missing keys."""
    data: Any = {}
    if config_path is not None:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("config.yaml must be a mapping")

    roles = split_csv(data.get("excluded_roles", PROPERTY_DATABASE_ROLE))
    targets = split_csv(data.get("targets"))
    return Config(
        api_base=str(data.get("api_base", API_BASE)).rstrip("/"),
        access_token=str(data.get("access_token", "")),
        output_dir=str(data.get("output_dir", "output")),
        excluded_roles=tuple(roles) if roles is not None else (PROPERTY_DATABASE_ROLE,),
        targets=tuple(targets) if targets else None,
        delay_sec=float(data.get("delay_sec", 0.0)),
        max_retries=int(data.get("max_retries", 4)),
        timeout_sec=int(data.get("timeout_sec", 60)),
        chunk_size=int(data.get("chunk_size", 65536)),
    )


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Let CLI flags win over values from the config file."""
    if args.output_dir:
        config.output_dir = args.output_dir
    if args.exclude_roles is not None:
        config.excluded_roles = tuple(split_csv(args.exclude_roles) or ())
    if args.targets is not None:
        targets = split_csv(args.targets)
        config.targets = tuple(targets) if targets else None
    return config


async def run_job(config: Config, urn: str, show_progress: bool = True) -> int:
    """Fetch the manifest for urn and persist its derivatives. Return process exit code."""
    if not (config.access_token or os.environ.get(ACCESS_TOKEN_ENV)):
        logging.warning("No access token configured; set %s or access_token", ACCESS_TOKEN_ENV)
    scheduler = RequestScheduler(config.delay_sec)
    connector = aiohttp.TCPConnector(limit=0)

    async with aiohttp.ClientSession(connector=connector) as session:
        client = ModelDerivativeClient(session, config, scheduler)
        try:
            manifest = await client.get_manifest(urn)
            ensure_job_complete(manifest)
        except JobNotReadyError as exc:
            logging.error("%s", exc)
            return 2
        except PersistenceError as exc:
            logging.error("Cannot read manifest: %s", exc)
            return 1

        nodes = parse_manifest_nodes(manifest)
        logging.info("Persisting derivatives of %s into %s", urn, config.output_dir)
        result = await run(
            nodes,
            Path(config.output_dir),
            config.role_filter(),
            source=client,
            urn=urn,
            reporter=ProgressReporter(enabled=show_progress),
        )

    logging.info(
        "Summary: discovered=%s completed=%s failed=%s",
        result.discovered,
        result.completed,
        len(result.failures),
    )
    return 0 if result.ok else 1


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Download all derivatives of a translated model")
    parser.add_argument("urn", help="Base64-encoded URN of the translated source model")
    parser.add_argument("--config", default=None, help="Path to config YAML file (default: ./config.yaml if present)")
    parser.add_argument("-o", "--output-dir", default=None, help="Directory to write derivatives into")
    parser.add_argument("--exclude-roles", default=None, help="Comma-separated roles to skip")
    parser.add_argument("--targets", default=None, help="Comma-separated viewable GUIDs to download")
    parser.add_argument("--no-progress", action="store_true", help="Disable the live status line")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every fetched derivative")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    config_path = Path(args.config) if args.config else Path("config.yaml")
    if args.config and not config_path.exists():
        raise SystemExit(f"config file not found: {config_path}")
    config = apply_overrides(load_config(config_path if config_path.exists() else None), args)
    raise SystemExit(asyncio.run(run_job(config, args.urn, show_progress=not args.no_progress)))


if __name__ == "__main__":
    main()
