"""The matching core's collaborators, wired once at startup and shared by the WebSocket and REST layers."""
from dataclasses import dataclass
from typing import Any

from carpool.services.chat import ChatService
from carpool.services.connection_store import ConnectionStore, MemoryConnectionStore
from carpool.services.coordinator import MatchingCoordinator
from carpool.services.gateway import Gateway
from carpool.services.search_registry import MemorySearchRegistry, SearchRegistry
from carpool.services.user_directory import MemoryUserDirectory, UserDirectory


@dataclass
class Services:
    registry: SearchRegistry
    connections: ConnectionStore
    users: UserDirectory
    gateway: Gateway
    coordinator: MatchingCoordinator
    chat: ChatService


def build_services(
    registry: SearchRegistry,
    connections: ConnectionStore,
    users: UserDirectory,
    gateway: Gateway | None = None,
    **coordinator_options: Any,
) -> Services:
    gateway = gateway or Gateway()
    return Services(
        registry=registry,
        connections=connections,
        users=users,
        gateway=gateway,
        coordinator=MatchingCoordinator(registry, connections, users, gateway, **coordinator_options),
        chat=ChatService(connections, users, gateway),
    )


def build_memory_services(**coordinator_options: Any) -> Services:
    return build_services(
        MemorySearchRegistry(), MemoryConnectionStore(), MemoryUserDirectory(), **coordinator_options
    )


_services: Services | None = None


def set_services(services: Services | None) -> None:
    global _services
    _services = services


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("Services not initialized")
    return _services
