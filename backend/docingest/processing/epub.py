"""
EPUB Structural Parser
══════════════════════

Recovers reading-order text from an EPUB without any external model call.

  1. Open the bytes as a zip archive; META-INF/container.xml must exist.
  2. container.xml → rootfile path (``full-path``, or the ``fullpath``
     spelling some producers emit). The OPF entry must exist.
  3. OPF → manifest (id → href, media-type) and spine (ordered idrefs).
     Both must be non-empty.
  4. Walk the spine. For each (x)html item: resolve href against the OPF
     directory, read the entry, drop <script>/<style> blocks and all tags,
     unescape entities, collapse whitespace. Non-empty sections are joined
     with a blank line.

Spine ids missing from the manifest, non-html items and hrefs that point
at absent entries are skipped. An entry that is present but cannot be
read (bad CRC, truncated or encrypted data) is a MalformedContainer, like
any other step 1–3 failure. Those raise the EPUB structure errors
from core/errors.py; the StructuralExtractor turns those into a placeholder.

Alongside the text, the parse collects informational metadata from the OPF
<metadata> block (Dublin Core title / creator / language) and one chapter
entry per emitted section.
"""

from __future__ import annotations

import html
import io
import logging
import posixpath
import re
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import unquote
from xml.etree import ElementTree as ET

from docingest.core.errors import EmptyManifestOrSpine, MalformedContainer, PackageNotFound

logger = logging.getLogger(__name__)

CONTAINER_PATH = "META-INF/container.xml"

_ROOTFILE_ATTRIBUTES = ("full-path", "fullpath")
_XML_MEDIA_TYPES     = ("application/xhtml+xml", "application/xml")

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_SELF_CLOSED_RE  = re.compile(r"<(script|style)\b[^>]*/>", re.IGNORECASE)
_COMMENT_RE      = re.compile(r"<!--.*?-->", re.DOTALL)
_TAG_RE          = re.compile(r"<[^>]+>")
_BODY_RE         = re.compile(r"<body\b[^>]*>(.*)</body\s*>", re.IGNORECASE | re.DOTALL)
_HEADING_RE      = re.compile(r"<(h[1-6]|title)\b[^>]*>(.*?)</\1\s*>", re.IGNORECASE | re.DOTALL)
_WHITESPACE_RE   = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class EpubChapter:
    id:    str
    href:  str                    # archive path after resolution
    title: Optional[str] = None


@dataclass
class EpubMetadata:
    title:    Optional[str] = None
    author:   Optional[str] = None
    language: Optional[str] = None
    chapters: list[EpubChapter] = field(default_factory=list)


@dataclass
class EpubDocument:
    text:     str
    sections: list[str]
    metadata: EpubMetadata


@dataclass
class _ManifestItem:
    id:         str
    href:       str
    media_type: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _local(tag: str) -> str:
    """Strip the ``{namespace}`` prefix ElementTree puts on tag names."""
    return tag.rsplit("}", 1)[-1]


def _iter_local(root: ET.Element, name: str):
    for elem in root.iter():
        if isinstance(elem.tag, str) and _local(elem.tag) == name:
            yield elem


def clean_text(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def markup_to_text(markup: str) -> str:
    """Drop scripts, styles, comments and tags; unescape entities; collapse whitespace."""
    body_match = _BODY_RE.search(markup)
    fragment = body_match.group(1) if body_match else markup

    fragment = _SCRIPT_STYLE_RE.sub(" ", fragment)
    fragment = _SELF_CLOSED_RE.sub(" ", fragment)
    fragment = _COMMENT_RE.sub(" ", fragment)
    fragment = _TAG_RE.sub(" ", fragment)
    return clean_text(html.unescape(fragment))


def _first_heading(markup: str) -> Optional[str]:
    match = _HEADING_RE.search(_SCRIPT_STYLE_RE.sub(" ", markup))
    if not match:
        return None
    title = clean_text(html.unescape(_TAG_RE.sub(" ", match.group(2))))
    return title or None


def resolve_href(opf_dir: str, href: str) -> str:
    """
    Resolve a manifest href to an archive path.

    A leading "/" means the archive root. "." segments are ignored and ".."
    drops the previous segment (never above the root).
    """
    href = unquote(href.split("#", 1)[0])
    if href.startswith("/"):
        segments: list[str] = []
        href = href.lstrip("/")
    else:
        segments = [s for s in opf_dir.split("/") if s]

    for segment in href.split("/"):
        if segment == "..":
            if segments:
                segments.pop()
        elif segment in ("", "."):
            continue
        else:
            segments.append(segment)
    return "/".join(segments)


def _read_entry(archive: zipfile.ZipFile, path: str) -> Optional[bytes]:
    """Entry bytes, or None when the archive has no such entry."""
    try:
        return archive.read(path)
    except KeyError:
        return None
    except (zipfile.BadZipFile, zlib.error, EOFError, RuntimeError, NotImplementedError) as exc:
        # present in the central directory but its data is corrupt or unsupported
        raise MalformedContainer(f"Entry {path} could not be read: {exc}") from exc



def _parse_xml(data: bytes, what: str, error_cls: type) -> ET.Element:
    try:
        return ET.fromstring(data)
    except ET.ParseError as exc:
        raise error_cls(f"{what} is not well-formed XML: {exc}") from exc


def _is_markup(media_type: str) -> bool:
    media_type = media_type.lower()
    return "html" in media_type or media_type in _XML_MEDIA_TYPES


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def parse_epub(raw: bytes) -> EpubDocument:
    """
    Parse an EPUB and return its text plus metadata.

    Raises:
        MalformedContainer:   not a zip, container.xml missing/unparseable, or an
                              entry present but unreadable
        PackageNotFound:      no rootfile path, or the OPF entry is absent
        EmptyManifestOrSpine: OPF declares no manifest items or no spine refs
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(raw))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as exc:
        raise MalformedContainer(f"Not a zip archive: {exc}") from exc

    with archive:
        # ── Step 1: container ────────────────────────────────────────────
        container_xml = _read_entry(archive, CONTAINER_PATH)
        if container_xml is None:
            raise MalformedContainer(f"{CONTAINER_PATH} not found in archive")

        container = _parse_xml(container_xml, "container.xml", MalformedContainer)

        # ── Step 2: package document path ────────────────────────────────
        opf_path: Optional[str] = None
        for rootfile in _iter_local(container, "rootfile"):
            for attr in _ROOTFILE_ATTRIBUTES:
                value = rootfile.get(attr)
                if value:
                    opf_path = value.strip()
                    break
            if opf_path:
                break

        if not opf_path:
            raise PackageNotFound("container.xml declares no rootfile path")

        opf_xml = _read_entry(archive, opf_path)
        if opf_xml is None:
            raise PackageNotFound(f"Package file {opf_path} missing from archive")

        package = _parse_xml(opf_xml, "Package document", PackageNotFound)

        # ── Step 3: manifest + spine ─────────────────────────────────────
        manifest: dict[str, _ManifestItem] = {}
        for item in _iter_local(package, "item"):
            item_id, href = item.get("id"), item.get("href")
            if item_id and href:
                manifest[item_id] = _ManifestItem(item_id, href, item.get("media-type", ""))

        spine = [ref.get("idref") for ref in _iter_local(package, "itemref") if ref.get("idref")]

        if not manifest or not spine:
            raise EmptyManifestOrSpine(
                f"Package has manifest_items={len(manifest)} spine_items={len(spine)}"
            )

        metadata = _read_metadata(package)

        # ── Step 4: walk the spine ───────────────────────────────────────
        opf_dir = posixpath.dirname(opf_path)
        sections: list[str] = []

        for idref in spine:
            item = manifest.get(idref)
            if item is None:
                logger.debug("EPUB spine skip | idref=%s reason=not_in_manifest", idref)
                continue
            if not _is_markup(item.media_type):
                continue

            entry_path = resolve_href(opf_dir, item.href)
            entry = _read_entry(archive, entry_path)
            if entry is None:
                logger.debug("EPUB spine skip | idref=%s path=%s reason=missing_entry", idref, entry_path)
                continue

            markup = entry.decode("utf-8", errors="replace")
            section = markup_to_text(markup)
            if not section:
                continue

            sections.append(section)
            metadata.chapters.append(
                EpubChapter(id=item.id, href=entry_path, title=_first_heading(markup))
            )

    logger.info(
        "EPUB parsed | opf=%s spine=%d sections=%d title=%r",
        opf_path, len(spine), len(sections), metadata.title,
    )
    return EpubDocument(text="\n\n".join(sections), sections=sections, metadata=metadata)


def _read_metadata(package: ET.Element) -> EpubMetadata:
    meta = EpubMetadata()
    block = next(_iter_local(package, "metadata"), None)
    if block is None:
        return meta

    def first(name: str) -> Optional[str]:
        for elem in _iter_local(block, name):
            value = clean_text("".join(elem.itertext()))
            if value:
                return value
        return None

    meta.title    = first("title")
    meta.author   = first("creator")
    meta.language = first("language")
    return meta
