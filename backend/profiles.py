"""
Participant display profiles.

The identity service is external; this module only defines what the backend
needs from it and a deterministic fallback when it has nothing.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)

AVATAR_FALLBACK_URL = "https://api.dicebear.com/7.x/avataaars/svg?seed={fid}"


@dataclass
class Profile:
    fid: int
    username: str
    display_name: str
    pfp_url: str


class ProfileLookup(Protocol):
    async def get_profiles(self, fids: Iterable[int]) -> Dict[int, Profile]:
        ...


def fallback_profile(fid: int) -> Profile:
    return Profile(
        fid=fid,
        username=f"user{fid}",
        display_name=f"User {fid}",
        pfp_url=AVATAR_FALLBACK_URL.format(fid=fid),
    )


async def resolve_profiles(fids: Iterable[int], lookup: Optional[ProfileLookup] = None) -> Dict[int, Profile]:
    """Profiles for every fid; missing or failed lookups get the fallback."""
    fids = list(dict.fromkeys(fids))
    found: Dict[int, Profile] = {}

    if lookup and fids:
        try:
            found = await lookup.get_profiles(fids)
        except Exception as e:
            logger.error(f"Profile lookup failed for {len(fids)} fids: {e}")
            found = {}

    return {fid: found.get(fid) or fallback_profile(fid) for fid in fids}
