from __future__ import annotations

import json
import logging
import mimetypes
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

from opentelemetry import trace

from estatecrm.core.config import get_settings


logger = logging.getLogger("estatecrm.objects")
tracer = trace.get_tracer("estatecrm.objects.storage")

Visibility = Literal["public", "private"]

OBJECTS_PREFIX = "/objects/"
ACL_SUFFIX = ".acl.json"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ObjectNotFoundError(Exception):
    pass


@dataclass
class ObjectAcl:
    owner: str | None
    visibility: Visibility = "private"
    content_type: str = DEFAULT_CONTENT_TYPE

    def allows(self, user_id: str | None) -> bool:
        if self.visibility == "public":
            return True
        return user_id is not None and user_id == self.owner


@dataclass
class StoredObject:
    path: Path
    acl: ObjectAcl

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


class LocalObjectStore:
    """Filesystem object store with a JSON ACL side-car per object.

    Private objects live under ``<root>/<private_dir>`` and are addressed as
    ``/objects/<relative path>``. Public assets are looked up in the configured
    search directories, first match wins.
    """

    def __init__(self, root: Path, private_dir: str, public_dirs: list[str]) -> None:
        self.root = root
        self.private_root = root / private_dir.strip("/")
        self.public_roots = [root / item for item in public_dirs]

    def reserve_upload(self) -> str:
        return f"{OBJECTS_PREFIX}uploads/{uuid.uuid4()}"

    def normalize_object_path(self, raw: str) -> str:
        """Reduce an upload URL to its ``/objects/...`` form; other values pass through."""
        path = urlparse(raw).path if "://" in raw else raw.split("?", 1)[0]
        if not path.startswith("/"):
            return raw
        if path.startswith(OBJECTS_PREFIX):
            return path
        private_prefix = f"/{self.private_root.relative_to(self.root).as_posix()}/"
        if path.startswith(private_prefix):
            return f"{OBJECTS_PREFIX}{path[len(private_prefix):]}"
        return path

    def write(self, object_path: str, content: bytes, *, owner: str, content_type: str | None = None) -> ObjectAcl:
        with tracer.start_as_current_span("objects.write") as span:
            span.set_attribute("object_path", object_path)
            target = self._private_path(object_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
            acl = ObjectAcl(owner=owner, visibility="private", content_type=content_type or DEFAULT_CONTENT_TYPE)
            self._write_acl(target, acl)
            logger.info("object.stored", extra={"object_path": object_path, "user_id": owner})
            return acl

    def get(self, object_path: str) -> StoredObject:
        with tracer.start_as_current_span("objects.get") as span:
            span.set_attribute("object_path", object_path)
            target = self._private_path(object_path)
            if not target.is_file():
                raise ObjectNotFoundError(object_path)
            return StoredObject(path=target, acl=self._read_acl(target))

    def set_acl(self, object_path: str, *, owner: str, visibility: Visibility) -> ObjectAcl:
        stored = self.get(object_path)
        acl = ObjectAcl(owner=owner, visibility=visibility, content_type=stored.acl.content_type)
        self._write_acl(stored.path, acl)
        logger.info("object.acl_updated", extra={"object_path": object_path, "user_id": owner, "status": visibility})
        return acl

    def search_public(self, file_path: str) -> StoredObject:
        for base in self.public_roots:
            candidate = self._inside(base, file_path)
            if candidate is not None and candidate.is_file():
                content_type = mimetypes.guess_type(candidate.name)[0] or DEFAULT_CONTENT_TYPE
                return StoredObject(path=candidate, acl=ObjectAcl(owner=None, visibility="public", content_type=content_type))
        raise ObjectNotFoundError(file_path)

    def _private_path(self, object_path: str) -> Path:
        if not object_path.startswith(OBJECTS_PREFIX):
            raise ObjectNotFoundError(object_path)
        candidate = self._inside(self.private_root, object_path[len(OBJECTS_PREFIX):])
        if candidate is None or candidate.name.endswith(ACL_SUFFIX):
            raise ObjectNotFoundError(object_path)
        return candidate

    @staticmethod
    def _inside(base: Path, relative: str) -> Path | None:
        relative = relative.strip("/")
        if not relative:
            return None
        resolved_base = base.resolve()
        candidate = (resolved_base / relative).resolve()
        if candidate == resolved_base or resolved_base not in candidate.parents:
            return None
        return candidate

    @staticmethod
    def _acl_path(target: Path) -> Path:
        return target.with_name(target.name + ACL_SUFFIX)

    def _write_acl(self, target: Path, acl: ObjectAcl) -> None:
        self._acl_path(target).write_text(json.dumps(asdict(acl)), encoding="utf-8")

    def _read_acl(self, target: Path) -> ObjectAcl:
        acl_path = self._acl_path(target)
        if not acl_path.is_file():
            return ObjectAcl(owner=None, visibility="private")
        payload = json.loads(acl_path.read_text(encoding="utf-8"))
        return ObjectAcl(
            owner=payload.get("owner"),
            visibility="public" if payload.get("visibility") == "public" else "private",
            content_type=payload.get("content_type") or DEFAULT_CONTENT_TYPE,
        )


def get_object_store() -> LocalObjectStore:
    settings = get_settings()
    return LocalObjectStore(
        root=Path(settings.object_storage_dir),
        private_dir=settings.private_object_dir,
        public_dirs=settings.public_object_dirs,
    )
