"""
Deterministic names for every ephemeral resource of a scan.

The same asset scan id always yields the same names, so a repeated reconcile
call finds the resource it started earlier instead of creating a second one.
"""
import hashlib
import re
from dataclasses import dataclass

# Lowercase alphanumerics separated by single hyphens, short enough for every
# provider once prefixed (GCP: RFC 1035, max 63 chars).
_VERBATIM_KEY = re.compile(r"[a-z0-9]+(-[a-z0-9]+)*")
_VERBATIM_MAX_LEN = 36
# Hashed keys carry a double hyphen, which a verbatim key can never contain.
_HASHED_PREFIX = "h--"
_HASH_HEX_LEN = 32


@dataclass(frozen=True)
class ResourceNames:
    snapshot: str
    staged_copy: str
    volume: str
    compute: str
    network_interface: str


def scan_key(asset_scan_id: str) -> str:
    """Provider-safe key for an asset scan id; injective across distinct ids."""
    if len(asset_scan_id) <= _VERBATIM_MAX_LEN and _VERBATIM_KEY.fullmatch(asset_scan_id):
        return asset_scan_id
    digest = hashlib.sha256(asset_scan_id.encode("utf-8")).hexdigest()
    return f"{_HASHED_PREFIX}{digest[:_HASH_HEX_LEN]}"


def resource_names(asset_scan_id: str) -> ResourceNames:
    key = scan_key(asset_scan_id)
    return ResourceNames(
        snapshot=f"snapshot-{key}",
        staged_copy=f"{key}.vhd",
        volume=f"targetvolume-{key}",
        compute=f"scanner-{key}",
        network_interface=f"scanner-nic-{key}",
    )
