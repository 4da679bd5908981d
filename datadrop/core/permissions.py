from __future__ import annotations

from dataclasses import dataclass
from typing import Any

GIB = 1024 * 1024 * 1024

CDN_ROLE = "cdnUser"
FILE_ROLE = "fileUser"
FILE_SIZE_ROLE_PREFIX = "fileSize_"
DEFAULT_MAX_FILE_SIZE_GB = 1


@dataclass(frozen=True)
class Permissions:
    can_upload_cdn: bool = False
    can_upload_file: bool = False
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_GB * GIB

    def allows(self, upload_type: str) -> bool:
        if upload_type == "cdn":
            return self.can_upload_cdn
        return self.can_upload_file

    def to_dict(self) -> dict[str, Any]:
        return {
            "canUploadCdn": self.can_upload_cdn,
            "canUploadFile": self.can_upload_file,
            "maxFileSizeBytes": self.max_file_size_bytes,
        }


def resolve_permissions(roles: Any) -> Permissions:
    """Derive upload capabilities from the role claim of a verified identity.

    ``fileSize_<N>`` sets the ceiling to N GiB; when several are present the last
    valid one wins. Anything that is not a list of roles grants nothing.
    """
    can_upload_cdn = False
    can_upload_file = False
    max_file_size_bytes = DEFAULT_MAX_FILE_SIZE_GB * GIB

    if not isinstance(roles, (list, tuple)):
        return Permissions()

    for role in roles:
        if not isinstance(role, str):
            continue
        if role == CDN_ROLE:
            can_upload_cdn = True
        elif role == FILE_ROLE:
            can_upload_file = True
        elif role.startswith(FILE_SIZE_ROLE_PREFIX):
            raw = role[len(FILE_SIZE_ROLE_PREFIX):]
            if raw.isdigit() and int(raw) > 0:
                max_file_size_bytes = int(raw) * GIB

    return Permissions(
        can_upload_cdn=can_upload_cdn,
        can_upload_file=can_upload_file,
        max_file_size_bytes=max_file_size_bytes,
    )
