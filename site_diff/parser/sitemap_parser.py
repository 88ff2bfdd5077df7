# File: site_diff/parser/sitemap_parser.py
"""site_diff.parser.sitemap_parser: Парсинг sitemap.xml и sitemap index."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Union

from lxml import etree

from site_diff.errors import SitemapParseError

__all__ = ["ParsedSitemap", "parse_sitemap"]

_BOM = b"\xef\xbb\xbf"


@dataclass(slots=True)
class ParsedSitemap:
    """Содержимое одного документа: страницы (`<url><loc>`) и вложенные sitemap (`<sitemap><loc>`)."""

    urls: List[str] = field(default_factory=list)
    nested_sitemaps: List[str] = field(default_factory=list)

    @property
    def is_index(self) -> bool:
        return bool(self.nested_sitemaps) and not self.urls


def _local_name(element: etree._Element) -> str:
    tag = element.tag
    if not isinstance(tag, str):
        return ""
    return etree.QName(tag).localname


def parse_sitemap(xml_content: Union[str, bytes]) -> ParsedSitemap:
    """Разбирает sitemap и возвращает URL страниц и ссылки на вложенные sitemap.

    Args:
        xml_content: содержимое sitemap.xml (str или bytes в UTF-8).

    Returns:
        ParsedSitemap; значения `loc` возвращаются как есть (без разрешения
        относительных ссылок) и без повторов, в порядке документа.

    Raises:
        SitemapParseError: документ не XML или не содержит ни одной записи
        `<url><loc>` / `<sitemap><loc>`.

    Пример:
    ```python
    from site_diff.parser.sitemap_parser import parse_sitemap

    with open('sitemap.xml', encoding='utf-8') as f:
        parsed = parse_sitemap(f.read())
    print(parsed.urls, parsed.nested_sitemaps)
    ```
    """
    raw = xml_content.encode("utf-8") if isinstance(xml_content, str) else xml_content
    raw = raw.strip().removeprefix(_BOM).lstrip()
    if not raw.startswith(b"<"):
        raise SitemapParseError("Sitemap response is not valid XML.")

    parser = etree.XMLParser(ns_clean=True, recover=True, resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(raw, parser=parser)
    except etree.XMLSyntaxError as exc:
        raise SitemapParseError(f"Sitemap response is not valid XML: {exc}") from exc
    if root is None:
        raise SitemapParseError("Sitemap response is not valid XML.")

    urls: dict[str, None] = {}
    nested: dict[str, None] = {}
    for loc in root.iter("{*}loc"):
        text = (loc.text or "").strip()
        parent = loc.getparent()
        if not text or parent is None:
            continue
        kind = _local_name(parent)
        if kind == "url":
            urls.setdefault(text, None)
        elif kind == "sitemap":
            nested.setdefault(text, None)

    if not urls and not nested:
        raise SitemapParseError("No URLs or nested sitemaps found in sitemap XML.")

    return ParsedSitemap(urls=list(urls), nested_sitemaps=list(nested))
