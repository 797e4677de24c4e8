"""Stable pseudo-identity for an unauthenticated device."""

import hashlib
import platform
import uuid


def generate_fingerprint(install_id: str, client_signature: str) -> str:
    """One-way sha256 over the install id and a coarse client signature.

    Deterministic and free of I/O: the same inputs always give the same
    64-char lowercase hex digest, and the digest reveals neither input.
    """
    if not install_id:
        raise ValueError("install_id is required")
    material = f"{install_id.strip()}|{client_signature.strip().lower()}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def coarse_client_signature(app_name: str = "timetable-client") -> str:
    """Low-entropy description of the runtime: enough to tell installs apart, not to track users."""
    return "/".join(
        [
            app_name,
            platform.system() or "unknown",
            platform.machine() or "unknown",
            platform.python_implementation(),
        ]
    )


def new_install_id() -> str:
    return uuid.uuid4().hex
