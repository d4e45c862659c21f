"""ICC profile selection and the PDF objects that carry it.

Profiles only ever describe pixels, they never transform them: an embedded
profile is passed through as-is and the default sRGB profile is attached
only when an RGB image has nothing better.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from typing import Optional, Union

import fitz
from PIL import ImageCms

from .config import Settings, get_settings
from .metadata_reader import icc_components

logger = logging.getLogger(__name__)

DEFAULT_SRGB_NAME = "sRGB IEC61966-2.1"

_DEVICE_SPACES = {1: "/DeviceGray", 3: "/DeviceRGB", 4: "/DeviceCMYK"}


@dataclass(frozen=True)
class EmbeddedProfile:
    data: bytes
    name: str
    components: int
    source: str = "image"


@dataclass(frozen=True)
class DefaultSrgbProfile:
    data: bytes
    name: str = DEFAULT_SRGB_NAME
    components: int = 3
    source: str = "srgb"


ColorProfile = Union[EmbeddedProfile, DefaultSrgbProfile]


def device_color_space(components: int) -> str:
    return _DEVICE_SPACES.get(components, "/DeviceRGB")


def _profile_description(data: bytes, fallback: str) -> str:
    try:
        description = ImageCms.getProfileDescription(ImageCms.ImageCmsProfile(BytesIO(data)))
    except (ImageCms.PyCMSError, OSError, TypeError) as exc:
        logger.warning(f"Unable to read ICC description: {exc}")
        return fallback
    return description.strip() or fallback


def _stabilize_icc(data: bytes) -> bytes:
    """Zero the header creation date and recompute a non-empty profile ID."""
    if len(data) < 128:
        return data
    profile = bytearray(data)
    profile[24:36] = bytes(12)
    if any(profile[84:100]):
        # the ID is an MD5 over the profile with flags, intent and ID zeroed
        scratch = bytearray(profile)
        scratch[44:48] = bytes(4)
        scratch[64:68] = bytes(4)
        scratch[84:100] = bytes(16)
        profile[84:100] = hashlib.md5(bytes(scratch)).digest()
    return bytes(profile)


@lru_cache(maxsize=1)
def load_default_srgb(icc_path: Optional[str] = None) -> DefaultSrgbProfile:
    """Load the default sRGB profile once per process.

    Concurrent first calls may both do the work; they produce identical
    bytes so whichever result is cached is fine.
    """
    if icc_path:
        data = Path(icc_path).read_bytes()
        logger.info(f"Loaded default sRGB profile from {icc_path} ({len(data)} bytes)")
    else:
        data = ImageCms.ImageCmsProfile(ImageCms.createProfile("sRGB")).tobytes()
        logger.info(f"Synthesized default sRGB profile ({len(data)} bytes)")
    data = _stabilize_icc(data)
    return DefaultSrgbProfile(data=data, name=_profile_description(data, DEFAULT_SRGB_NAME))


def resolve_color_profile(
    icc_profile: Optional[bytes],
    components: int,
    enforce_srgb: bool = True,
    settings: Optional[Settings] = None,
) -> Optional[ColorProfile]:
    """Pick the profile for an image with ``components`` color channels.

    Returns ``None`` when the image should be written in a device space.
    """
    if icc_profile:
        declared = icc_components(icc_profile)
        if declared == components:
            profile = EmbeddedProfile(
                data=bytes(icc_profile),
                name=_profile_description(icc_profile, "Embedded ICC profile"),
                components=components,
            )
            logger.info(f"Using embedded ICC profile '{profile.name}' ({len(profile.data)} bytes)")
            return profile
        logger.warning(
            f"Ignoring embedded ICC profile: declares {declared} components, image has {components}"
        )

    if enforce_srgb and components == 3:
        settings = settings or get_settings()
        return load_default_srgb(settings.srgb_icc_path)

    logger.info(f"No ICC profile attached, using {device_color_space(components)}")
    return None


def write_icc_stream(doc: fitz.Document, profile: ColorProfile) -> int:
    """Add the profile as an ICC stream object and return its xref."""
    icc_xref = doc.get_new_xref()
    doc.update_object(
        icc_xref,
        f"<< /N {profile.components} /Alternate {device_color_space(profile.components)} >>",
    )
    doc.update_stream(icc_xref, profile.data)
    return icc_xref


def _pdf_text(value: str) -> str:
    cleaned = "".join(ch for ch in value if ch not in "()\\" and 32 <= ord(ch) < 127)
    return cleaned or "ICC"


def write_output_intent(doc: fitz.Document, profile: ColorProfile, icc_xref: int) -> int:
    """Reference the profile from a catalog-level /OutputIntents array."""
    subtype = "/GTS_PDFX" if profile.components == 4 else "/GTS_PDFA1"
    name = _pdf_text(profile.name)
    intent_xref = doc.get_new_xref()
    doc.update_object(
        intent_xref,
        f"<< /Type /OutputIntent /S {subtype} /OutputConditionIdentifier ({name}) "
        f"/Info ({name}) /DestOutputProfile {icc_xref} 0 R >>",
    )
    doc.xref_set_key(doc.pdf_catalog(), "OutputIntents", f"[{intent_xref} 0 R]")
    logger.info(f"OutputIntent {subtype} -> '{name}' (source={profile.source})")
    return intent_xref
