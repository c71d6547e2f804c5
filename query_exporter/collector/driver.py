"""
Database driver abstraction.

The collector only needs a narrow capability from a database client:
connect, ping, run an aggregation and open a change stream. Both return a
forward-only cursor of decoded documents. timeout() bounds every
operation started inside it, cursor iteration included, and raises
TimeoutError once the limit is exceeded. MongoDBDriver implements it on
top of pymongo; tests use in-memory fakes.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, ContextManager, Iterator, List, Mapping, Optional, Protocol, Sequence

import pymongo
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from .errors import ServerConnectError

logger = logging.getLogger(__name__)

DEFAULT_MONGODB_PORT = 27017


class Cursor(Protocol):
    """Forward-only sequence of decoded documents."""

    def __iter__(self) -> Iterator[Mapping[str, Any]]:
        ...

    def close(self) -> None:
        ...


class Driver(Protocol):
    def connect(self) -> None:
        ...

    def ping(self) -> None:
        ...

    def timeout(self, seconds: Optional[float]) -> ContextManager[None]:
        ...

    def aggregate(
        self,
        database: str,
        collection: str,
        pipeline: Sequence[Mapping[str, Any]],
    ) -> Cursor:
        ...

    def watch(
        self,
        database: str,
        collection: str,
        pipeline: Sequence[Mapping[str, Any]] = (),
    ) -> Cursor:
        ...

    def close(self) -> None:
        ...


@dataclass(frozen=True)
class ChangeStreamEvent:
    db: str
    coll: str
    operation_type: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "ChangeStreamEvent":
        """Decode a raw change stream document. Raises ValueError if malformed."""
        ns = doc.get("ns")
        if not isinstance(ns, Mapping):
            raise ValueError(f"change event without namespace: {doc!r}")
        return cls(
            db=str(ns.get("db", "")),
            coll=str(ns.get("coll", "")),
            operation_type=doc.get("operationType"),
        )


class MongoDBDriver:
    """Driver backed by a pymongo MongoClient."""

    def __init__(self, uri: str, name: str = "", **client_options: Any) -> None:
        self._uri = uri
        self._name = name or server_name_from_uri(uri)
        self._client_options = client_options
        self._client: Optional[MongoClient] = None

    @property
    def client(self) -> MongoClient:
        if self._client is None:
            raise RuntimeError(f"driver for {self._name} is not connected")
        return self._client

    def connect(self) -> None:
        """Create the client and enforce the connection with a ping."""
        try:
            self._client = MongoClient(self._uri, **self._client_options)
            self.ping()
        except PyMongoError as exc:
            raise ServerConnectError(self._name, exc) from exc
        logger.debug(f"[DRIVER] connected to {self._name}")

    def ping(self) -> None:
        self.client.admin.command("ping")

    @contextmanager
    def timeout(self, seconds: Optional[float]) -> Iterator[None]:
        """Client side operation timeout (pymongo.timeout) for the block.

        The server gets the remaining time as maxTimeMS; a blocked call or
        getMore is abandoned locally once the limit is reached.
        """
        limit = seconds if seconds is not None and seconds > 0 else None
        try:
            with pymongo.timeout(limit):
                yield
        except PyMongoError as exc:
            if exc.timeout:
                raise TimeoutError(f"operation on {self._name} exceeded {seconds}s: {exc}") from exc
            raise

    def aggregate(
        self,
        database: str,
        collection: str,
        pipeline: Sequence[Mapping[str, Any]],
    ) -> Cursor:
        return self.client[database][collection].aggregate(list(pipeline))

    def watch(
        self,
        database: str,
        collection: str,
        pipeline: Sequence[Mapping[str, Any]] = (),
    ) -> Cursor:
        return self.client[database][collection].watch(list(pipeline))

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def server_name_from_uri(uri: str) -> str:
    """Host list of a MongoDB URI, e.g. "foo:27017,bar:27017".

    Used as server name when none is configured. SRV URIs keep their
    single host name as is.
    """
    scheme, _, rest = uri.partition("://")
    if not rest:
        rest, scheme = scheme, "mongodb"
    hosts = rest.split("/", 1)[0].split("?", 1)[0].rsplit("@", 1)[-1]
    if scheme == "mongodb+srv":
        return hosts

    nodes: List[str] = []
    for host in hosts.split(","):
        if not host:
            continue
        if host.startswith("["):
            has_port = "]:" in host
        else:
            has_port = ":" in host
        nodes.append(host if has_port else f"{host}:{DEFAULT_MONGODB_PORT}")
    return ",".join(nodes)
