"""Timetable Sync device client.

Components are wired in one direction only:
    CredentialStore -> DeviceAuthManager -> SyncEngine
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from client.config import ClientConfig
from client.device_auth import DeviceAuthManager
from client.storage import CredentialStore, store_from_config
from client.sync import SyncEngine
from client.transport import ApiClient


@dataclass
class TimetableClient:
    config: ClientConfig
    store: CredentialStore
    api: ApiClient
    auth: DeviceAuthManager
    sync: SyncEngine

    async def aclose(self) -> None:
        await self.sync.close()
        await self.api.aclose()


def create_client(
    config: Optional[ClientConfig] = None,
    *,
    store: Optional[CredentialStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    client_signature: Optional[str] = None,
) -> TimetableClient:
    config = config or ClientConfig()
    store = store or store_from_config(config)
    api = ApiClient(config, transport=transport)
    auth = DeviceAuthManager(config, store, api, client_signature=client_signature)
    sync = SyncEngine(config, store, auth)
    return TimetableClient(config=config, store=store, api=api, auth=auth, sync=sync)


__all__ = [
    "ClientConfig",
    "DeviceAuthManager",
    "SyncEngine",
    "TimetableClient",
    "create_client",
]
