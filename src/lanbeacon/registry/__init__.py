"""
Network-scoped Service Registry

This package provides:
1. derive_network_key — source address -> network key (IPv4 /32, IPv6 /64)
2. NetworkRegistry — lock-striped map of network key -> DeviceSet
3. start_registry_server — launches the HTTP API in a daemon thread
4. BeaconClient — HTTP client for announcing and listing
"""

from .network import InvalidAddress, derive_network_key, select_source_address
from .service_registry import DeviceSet, Instance, NetworkRegistry, ReadWriteLock
from .http_api import BeaconClient, start_registry_server

__all__ = [
    'BeaconClient',
    'DeviceSet',
    'Instance',
    'InvalidAddress',
    'NetworkRegistry',
    'ReadWriteLock',
    'derive_network_key',
    'select_source_address',
    'start_registry_server',
]
