"""Translate cloud VPN snapshot URLs into LAN-local snapshot URLs."""

from typing import Optional


ACCESS_TOKEN_LENGTH = 32
LOCAL_SNAPSHOT_PATH = "live/snapshot_720.jpg"


def extract_access_token(remote_url: str) -> Optional[str]:
    """Return the first path fragment that looks like a camera access token.

    Args:
        remote_url: VPN-relative snapshot URL issued by the cloud service.

    Returns:
        The leftmost fragment of exactly 32 characters, or None.
    """
    for fragment in remote_url.split("/"):
        if len(fragment) == ACCESS_TOKEN_LENGTH:
            return fragment
    return None


def local_snapshot_url(remote_url: str, lan_address: str) -> Optional[str]:
    """Build the LAN snapshot URL for a camera.

    Args:
        remote_url: VPN-relative snapshot URL.
        lan_address: LAN address of the camera (host or host:port).

    Returns:
        ``http://<lan_address>/<token>/live/snapshot_720.jpg``, or None when
        the remote URL carries no access token.
    """
    token = extract_access_token(remote_url)
    if token is None:
        return None
    return f"http://{lan_address}/{token}/{LOCAL_SNAPSHOT_PATH}"
