"""Rule registry, the bench rule and the dashboard summaries built from rules."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Iterator, Protocol, runtime_checkable


@runtime_checkable
class Link(Protocol):
    id: str

    def bytes(self) -> tuple[int, int]:
        """Received and sent byte counts."""

    def packets(self) -> tuple[int, int]:
        """Received and sent packet counts."""


@runtime_checkable
class Rule(Protocol):
    name: str
    port: int
    type_name: str


@runtime_checkable
class LinkedRule(Protocol):
    remote: str
    target: str

    def new_link(self, link_id: str, remote: str, remote_conn: Any) -> Link: ...

    def links(self) -> list[Link]: ...

    def on_disconnect(self, link_id: str) -> None: ...


class RuleManager:
    """Thread-safe ordered collection of rules."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rules: list[Any] = []

    def add(self, rule: Any) -> None:
        with self._lock:
            self._rules.append(rule)

    def get_linked(self, name: str, remote: str) -> Any | None:
        """Return the linked rule called ``name`` that talks to ``remote``, if any."""
        for rule in self:
            if isinstance(rule, LinkedRule) and rule.name == name and rule.remote == remote:
                return rule
        return None

    def __iter__(self) -> Iterator[Any]:
        with self._lock:
            return iter(list(self._rules))

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)

    def on_disconnect(self, link_id: str) -> list[threading.Thread]:
        """Notify every linked rule in its own thread; return the started threads."""
        threads = [
            threading.Thread(target=rule.on_disconnect, args=(link_id,), daemon=True)
            for rule in self
            if isinstance(rule, LinkedRule)
        ]
        for thread in threads:
            thread.start()
        return threads


@dataclass(frozen=True)
class BenchLink:
    """A bench link carries no traffic of its own."""

    id: str

    def bytes(self) -> tuple[int, int]:
        return 0, 0

    def packets(self) -> tuple[int, int]:
        return 0, 0


class Bench:
    """Benchmark rule: opens links that are acknowledged straight away."""

    type_name = "bench"

    def __init__(self, name: str, target: str, local_port: int = 0) -> None:
        self.name = name
        self.target = target
        self.port = local_port

    @property
    def remote(self) -> str:
        return self.target

    def new_link(self, link_id: str, remote: str, remote_conn: Any) -> BenchLink:
        return BenchLink(link_id)

    def links(self) -> list[BenchLink]:
        return []


def info_summary(manager: RuleManager, rule_count: int) -> dict[str, int]:
    """Counts shown on the dashboard: rules, virtual links and interactive sessions."""
    virtual_links = 0
    sessions = 0
    for rule in manager:
        if isinstance(rule, LinkedRule):
            count = len(rule.links())
            virtual_links += count
            if rule.type_name in ("shell", "vnc"):
                sessions += count
    return {"rules": rule_count, "virtual_links": virtual_links, "sessions": sessions}


def rules_report(manager: RuleManager) -> list[dict[str, Any]]:
    """Per-rule details with link traffic counters, as the dashboard lists them."""
    report = []
    for rule in manager:
        linked = isinstance(rule, LinkedRule)
        item: dict[str, Any] = {"name": rule.name}
        if linked and rule.remote:
            item["remote"] = rule.remote
        item["port"] = rule.port
        item["type"] = rule.type_name
        links = []
        if linked:
            for link in rule.links():
                recv_bytes, send_bytes = link.bytes()
                recv_packet, send_packet = link.packets()
                links.append(
                    {
                        "id": link.id,
                        "send_bytes": send_bytes,
                        "send_packet": send_packet,
                        "recv_bytes": recv_bytes,
                        "recv_packet": recv_packet,
                    }
                )
        item["links"] = links or None
        report.append(item)
    return report