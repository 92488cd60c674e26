"""
Merchant detail page extraction.

The detail page has three loosely structured parts:

- "Merchant Information" section: ``.list-group-item`` rows such as
  "Homepage:", "Primary Category:", "Ships To:", "Logo:"
- "Tools" section: asset links ("120x60 Logo", "600x450 Screenshot"),
  affiliate links under a "Links" header, Preview Deals and FreshReach
- "Networks" section: table of FMTC id / "Network (id)" / status badge /
  join link

Every field has an ordered list of extraction strategies; the first one
returning a value wins. A strategy that raises is recorded in
``extraction_errors`` and the next one is tried, so a layout change in
one place yields a partial record rather than a failed visit. Only a
page that does not load at all is an error.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from fmtc_crawler import selectors
from fmtc_crawler.config import BASE_URL, CrawlerConfig
from fmtc_crawler.errors import NavigationError
from fmtc_crawler.infrastructure.anti_detection import AntiDetectionEngine, detect_blocking
from fmtc_crawler.models import MerchantDetail, NetworkAssociation, NetworkStatus
from fmtc_crawler.utils.captcha_solver import CaptchaResolutionService
from fmtc_crawler.utils.page_helpers import wait_for_any

logger = logging.getLogger(__name__)

# Anchor text prefix in the Tools section -> image slot
LOGO_SLOTS = {
    "120x60 Logo": "logo_120x60",
    "88x31 Logo": "logo_88x31",
}
SCREENSHOT_SLOTS = {
    "280x210 Screenshot": "screenshot_280x210",
    "600x450 Screenshot": "screenshot_600x450",
}

# Checked against the link's list item text, in order
NETWORK_TEXT_PATTERNS = [
    (re.compile(r"\b(AW|Awin)\b", re.IGNORECASE), "AW"),
    (re.compile(r"\b(CJ|Commission Junction)\b", re.IGNORECASE), "CJ"),
    (re.compile(r"\b(RA|Rakuten)\b", re.IGNORECASE), "RA"),
    (re.compile(r"\b(LS|LinkShare)\b", re.IGNORECASE), "LS"),
    (re.compile(r"\b(SAS|ShareASale)\b", re.IGNORECASE), "SAS"),
    (re.compile(r"\b(PJ|PartnerJunction)\b", re.IGNORECASE), "PJ"),
    (re.compile(r"\b(TC|TradeTracker)\b", re.IGNORECASE), "TC"),
    (re.compile(r"\b(WB|WebGains)\b", re.IGNORECASE), "WB"),
    (re.compile(r"\b(PH|PHG)\b", re.IGNORECASE), "PH"),
    (re.compile(r"\b(AN|Affiliate Network)\b", re.IGNORECASE), "AN"),
]

# Checked against the href when the text names no network
NETWORK_HOST_HINTS = [
    (("awin", "awclick"), "AW"),
    (("cj.com", "commission"), "CJ"),
    (("rakuten", "linksynergy"), "RA"),
    (("shareasale",), "SAS"),
    (("partnerize",), "PJ"),
    (("webgains",), "WB"),
    (("tradedoubler",), "TD"),
    (("impact",), "IR"),
]

FRESH_REACH_TEXT_PATTERNS = [
    re.compile(r"freshreach.*support"),
    re.compile(r"freshreach.*enable"),
    re.compile(r"freshreach.*available"),
    re.compile(r"freshreach.*active"),
]

SUCCESS_CLASSES = {"label-success", "badge-success", "text-success", "success"}


def normalize_detail_url(url: str) -> str:
    """Repair the legacy path typo and use the canonical details path."""
    fixed = url.replace("program_dtails", "program_directory")
    if "program_directory/m/" in fixed:
        fixed = fixed.replace("program_directory/m/", "program_directory/details/m/")
    if fixed != url:
        logger.debug(f"Normalized detail URL {url} -> {fixed}")
    return fixed


def image_extension(url: str) -> str:
    """File extension from the URL path, ``.jpg`` when there is none."""
    return os.path.splitext(urlparse(url).path)[1] or ".jpg"


def sanitize_name(name: str) -> str:
    """Directory-safe merchant name."""
    return re.sub(r"[^a-zA-Z0-9\-_]", "_", name or "unknown")[:50]


def classify_affiliate_link(item_text: str, href: str) -> str:
    """Network code for an affiliate link, ``OTHER`` when unknown."""
    for pattern, code in NETWORK_TEXT_PATTERNS:
        if pattern.search(item_text or ""):
            return code
    lowered = href.lower()
    for hints, code in NETWORK_HOST_HINTS:
        if any(hint in lowered for hint in hints):
            return code
    return "OTHER"


def badge_status(badge_classes: Sequence[str]) -> NetworkStatus:
    classes = set(badge_classes or ())
    if "badge-success" in classes:
        return NetworkStatus.JOINED
    if "badge-warning" in classes:
        return NetworkStatus.UNVERIFIED
    return NetworkStatus.NOT_JOINED


class DetailDocument:
    """Parsed detail page with the sections located once."""

    def __init__(self, html: str, url: str, base_url: str = BASE_URL):
        self.soup = BeautifulSoup(html or "", "html.parser")
        self.url = url
        self.base_url = base_url
        self.sections: Dict[str, Any] = {}
        for section in self.soup.find_all("section"):
            heading = section.find("h3")
            if heading is None:
                continue
            title = heading.get_text(" ", strip=True)
            for key in ("Merchant Information", "Tools", "Networks"):
                if key in title and key not in self.sections:
                    self.sections[key] = section

    def absolute(self, href: Optional[str]) -> Optional[str]:
        if not href:
            return None
        return urljoin(self.base_url.rstrip("/") + "/", href)

    @property
    def info_items(self) -> List[Any]:
        section = self.sections.get("Merchant Information")
        return section.select(".list-group-item") if section else []

    @property
    def tools_items(self) -> List[Any]:
        section = self.sections.get("Tools")
        return section.select("li.list-group-item") if section else []

    def info_item(self, label: str):
        for item in self.info_items:
            if label in item.get_text(" ", strip=True):
                return item
        return None

    def body_text(self) -> str:
        body = self.soup.body or self.soup
        return body.get_text(" ", strip=True)


Strategy = Callable[[DetailDocument], Any]


# -- per-field strategies ---------------------------------------------------

def _info_value(label: str) -> Strategy:
    def strategy(doc: DetailDocument) -> Optional[str]:
        item = doc.info_item(label)
        if item is None:
            return None
        value = item.select_one(".ml-5")
        if value is not None:
            return value.get_text(" ", strip=True) or None
        text = item.get_text(" ", strip=True)
        return text.split(label, 1)[1].strip() or None
    strategy.__name__ = f"info_value[{label}]"
    return strategy


def _info_link(label: str) -> Strategy:
    def strategy(doc: DetailDocument) -> Optional[str]:
        item = doc.info_item(label)
        if item is None:
            return None
        link = item.select_one(".ml-5 a") or item.find("a")
        return doc.absolute(link.get("href")) if link is not None else None
    strategy.__name__ = f"info_link[{label}]"
    return strategy


def _table_value(label: str) -> Strategy:
    """Value cell next to a th/td label anywhere on the page."""
    def strategy(doc: DetailDocument) -> Optional[str]:
        for cell in doc.soup.find_all(["th", "td", "dt"]):
            if cell.get_text(strip=True).rstrip(":") == label:
                value = cell.find_next_sibling(["td", "dd"])
                if value is not None:
                    return value.get_text(" ", strip=True) or None
        return None
    strategy.__name__ = f"table_value[{label}]"
    return strategy


def _table_link(label: str) -> Strategy:
    def strategy(doc: DetailDocument) -> Optional[str]:
        for cell in doc.soup.find_all(["th", "td", "dt"]):
            if cell.get_text(strip=True).rstrip(":") == label:
                value = cell.find_next_sibling(["td", "dd"])
                link = value.find("a") if value is not None else None
                if link is not None:
                    return doc.absolute(link.get("href"))
        return None
    strategy.__name__ = f"table_link[{label}]"
    return strategy


def name_from_heading(doc: DetailDocument) -> Optional[str]:
    for tag in ("h1", "h2"):
        heading = doc.soup.find(tag)
        if heading is not None and heading.get_text(strip=True):
            return heading.get_text(" ", strip=True)
    return None


def name_from_title(doc: DetailDocument) -> Optional[str]:
    title = doc.soup.title.get_text(strip=True) if doc.soup.title else ""
    name = re.split(r"\s+[|\-]\s+", title)[0].strip()
    return name or None


def fmtc_id_from_url(doc: DetailDocument) -> Optional[str]:
    for pattern in selectors.DETAIL_PATH_PATTERNS:
        match = pattern.search(doc.url or "")
        if match:
            return match.group(1)
    return None


def fmtc_id_from_text(doc: DetailDocument) -> Optional[str]:
    match = selectors.FMTC_ID_PATTERN.search(doc.body_text())
    return match.group(1) if match else None


def ships_to_from_info(doc: DetailDocument) -> Optional[List[str]]:
    raw = _info_value("Ships To:")(doc) or _table_value("Ships To")(doc)
    if not raw:
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]


def logo_from_info(doc: DetailDocument) -> Optional[str]:
    item = doc.info_item("Logo:")
    img = item.find("img") if item is not None else None
    return doc.absolute(img.get("src")) if img is not None else None


def _tool_links(slots: Dict[str, str]) -> Strategy:
    def strategy(doc: DetailDocument) -> Dict[str, str]:
        found: Dict[str, str] = {}
        for item in doc.tools_items:
            text = item.get_text(" ", strip=True)
            for prefix, slot in slots.items():
                if slot in found or prefix not in text:
                    continue
                link = item.find("a")
                if link is not None and link.get("href"):
                    found[slot] = doc.absolute(link["href"])
        return found
    return strategy


logo_links = _tool_links(LOGO_SLOTS)
screenshot_links = _tool_links(SCREENSHOT_SLOTS)


def preview_deals_from_tools(doc: DetailDocument) -> Optional[str]:
    link = doc.soup.select_one("a.showdeals")
    if link is None:
        return None
    target = link.get("rel") or link.get("href")
    if isinstance(target, list):
        target = " ".join(target)
    return doc.absolute(target) if target and target != "#" else None


def fresh_reach_urls_from_tools(doc: DetailDocument) -> List[str]:
    urls: List[str] = []
    for item in doc.tools_items:
        if "FreshReach" not in item.get_text(" ", strip=True):
            continue
        for link in item.find_all("a"):
            href = link.get("href") or ""
            if "freshreach.co" in href and href not in urls:
                urls.append(href)
    return urls


def fresh_reach_from_label(doc: DetailDocument) -> Optional[bool]:
    """A FreshReach label or badge styled or worded as supported."""
    for span in doc.soup.select("span.label, span[class*='label'], .label, .badge"):
        text = span.get_text(" ", strip=True).lower()
        if "freshreach" not in text:
            continue
        classes = set(span.get("class") or [])
        if classes & SUCCESS_CLASSES or any(
            word in text for word in ("supported", "enabled", "available")
        ):
            return True
    return None


def fresh_reach_from_tools(doc: DetailDocument) -> Optional[bool]:
    return True if fresh_reach_urls_from_tools(doc) else None


def fresh_reach_from_text(doc: DetailDocument) -> Optional[bool]:
    text = doc.body_text().lower()
    if any(pattern.search(text) for pattern in FRESH_REACH_TEXT_PATTERNS):
        return True
    return None


def affiliate_links_from_tools(doc: DetailDocument) -> Dict[str, List[str]]:
    """Links under the Tools "Links" header grouped by network code."""
    grouped: Dict[str, List[str]] = {}
    section = doc.sections.get("Tools")
    if section is None:
        return grouped

    for group in section.select("ul.list-group"):
        header = group.select_one("li.list-group-item.fmtc-bg-primary")
        if header is None or "Links" not in header.get_text(" ", strip=True):
            continue
        for item in group.select("li.list-group-item"):
            if "fmtc-bg-primary" in (item.get("class") or []):
                continue
            text = item.get_text(" ", strip=True)
            if "Preview Deals" in text or "FreshReach" in text:
                continue
            for link in item.find_all("a"):
                href = link.get("href") or ""
                if not href or href.startswith("#") or "javascript:" in href:
                    continue
                href = doc.absolute(href)
                bucket = grouped.setdefault(classify_affiliate_link(text, href), [])
                if href not in bucket:
                    bucket.append(href)
    return grouped


def aw_url_from_label(doc: DetailDocument) -> Optional[str]:
    """The link in the list item labelled "AW URL"."""
    for item in doc.soup.select(".list-group-item"):
        if "AW URL" in item.get_text(" ", strip=True):
            link = item.find("a")
            if link is not None and link.get("href"):
                return doc.absolute(link["href"])
    return None


def first_affiliate_link(doc: DetailDocument) -> Optional[str]:
    links = affiliate_links_from_tools(doc)
    for code in ("AW", *links):
        if links.get(code):
            return links[code][0]
    return None


def parse_network_table(doc: DetailDocument) -> List[NetworkAssociation]:
    """
    Parse the Networks table. A page without one yields an empty list.

    Columns: 0 (unused) | 1 FMTC id | 2 "Name (id)" | 3 status badge | 4 join link
    """
    section = doc.sections.get("Networks")
    if section is None:
        return []
    body = (
        section.select_one("table.fmtc-table tbody")
        or section.select_one("table tbody")
        or section.select_one(".table tbody")
    )
    if body is None:
        return []

    networks: List[NetworkAssociation] = []
    for row in body.find_all("tr"):
        cells = row.find_all("td")
        if len(cells) < 4:
            continue

        id_match = re.search(r"(\d+)", cells[1].get_text(strip=True))
        network_text = cells[2].get_text(" ", strip=True)
        composite = selectors.NETWORK_COMPOSITE_PATTERN.match(network_text)
        if composite:
            network_name, network_id = composite.group(1).strip(), composite.group(2)
        else:
            network_name, network_id = network_text, ""
        if not network_name:
            continue

        badge = cells[3].select_one(".badge")
        join_link = cells[4].find("a") if len(cells) > 4 else None

        networks.append(NetworkAssociation(
            network_name=network_name,
            network_id=network_id,
            status=badge_status(badge.get("class") if badge is not None else []),
            join_url=doc.absolute(join_link.get("href")) if join_link is not None else None,
            fmtc_id=id_match.group(1) if id_match else None,
        ))
    return networks


def fmtc_id_from_networks(doc: DetailDocument) -> Optional[str]:
    for network in parse_network_table(doc):
        if network.fmtc_id:
            return network.fmtc_id
    return None


# Ordered fallbacks per field; first non-empty result wins
FIELD_STRATEGIES: Dict[str, Tuple[Strategy, ...]] = {
    "name": (name_from_heading, _info_value("Name:"), name_from_title),
    "homepage": (_info_link("Homepage:"), _table_link("Homepage")),
    "primary_category": (_info_value("Primary Category:"), _table_value("Primary Category")),
    "primary_country": (_info_value("Primary Country:"), _table_value("Primary Country")),
    "ships_to": (ships_to_from_info,),
    "fmtc_id": (fmtc_id_from_url, fmtc_id_from_text, fmtc_id_from_networks),
    "logo_url": (logo_from_info,),
    "logo_urls": (logo_links,),
    "screenshot_urls": (screenshot_links,),
    "affiliate_links": (affiliate_links_from_tools,),
    "affiliate_url": (aw_url_from_label, first_affiliate_link),
    "preview_deals_url": (preview_deals_from_tools,),
    "fresh_reach_urls": (fresh_reach_urls_from_tools,),
    "fresh_reach_supported": (fresh_reach_from_label, fresh_reach_from_tools, fresh_reach_from_text),
    "networks": (parse_network_table,),
}


def run_strategies(
    doc: DetailDocument,
    field_name: str,
    strategies: Sequence[Strategy],
    errors: List[str],
) -> Any:
    """First non-empty strategy result. Failures are appended to ``errors``."""
    for strategy in strategies:
        try:
            value = strategy(doc)
        except Exception as e:
            name = getattr(strategy, "__name__", "strategy")
            errors.append(f"{field_name}: {name} failed: {e}")
            logger.debug(f"Extraction strategy {name} for {field_name} failed: {e}")
            continue
        if value:
            return value
    return None


def parse_merchant_detail_html(html: str, url: str, base_url: str = BASE_URL) -> MerchantDetail:
    """Extract a MerchantDetail from detail page markup. Never raises on layout."""
    doc = DetailDocument(html, url, base_url)
    errors: List[str] = []
    values = {
        field_name: run_strategies(doc, field_name, strategies, errors)
        for field_name, strategies in FIELD_STRATEGIES.items()
    }

    logo_urls = dict(values["logo_urls"] or {})
    if values["logo_url"] and "logo_120x60" not in logo_urls:
        logo_urls["logo_120x60"] = values["logo_url"]

    return MerchantDetail(
        source_url=url,
        name=values["name"],
        homepage=values["homepage"],
        primary_category=values["primary_category"],
        primary_country=values["primary_country"],
        ships_to=values["ships_to"] or [],
        fmtc_id=values["fmtc_id"],
        fresh_reach_supported=bool(values["fresh_reach_supported"]),
        fresh_reach_urls=values["fresh_reach_urls"] or [],
        logo_url=values["logo_url"],
        logo_urls=logo_urls,
        screenshot_urls=values["screenshot_urls"] or {},
        affiliate_url=values["affiliate_url"],
        affiliate_links=values["affiliate_links"] or {},
        preview_deals_url=values["preview_deals_url"],
        networks=values["networks"] or [],
        extraction_errors=errors,
    )


class MerchantDetailExtractor:
    """
    Visits merchant detail pages and extracts MerchantDetail records.

    Usage:
        extractor = MerchantDetailExtractor(config, anti_detection=engine)
        detail = await extractor.fetch(page, summary.detail_url, summary.name)
    """

    def __init__(
        self,
        config: CrawlerConfig,
        anti_detection: Optional[AntiDetectionEngine] = None,
        captcha: Optional[CaptchaResolutionService] = None,
    ):
        self.config = config
        self.anti_detection = anti_detection
        self.captcha = captcha

    async def open(self, page, url: str) -> None:
        """
        Navigate to a detail page and wait until it shows content.

        Raises:
            NavigationError: Timeout, blocking status, login redirect or no content
            ChallengeError: A reCAPTCHA on the page could not be resolved
        """
        try:
            response = await page.goto(
                url, wait_until="domcontentloaded", timeout=self.config.navigation_timeout_ms
            )
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Detail page timed out: {e}", url=url) from e

        status = response.status if response is not None else None
        blocking = detect_blocking(status)
        if blocking.blocked:
            raise NavigationError(f"Detail page blocked ({blocking.reason})", url=url)

        if "login" in page.url.lower():
            raise NavigationError("Redirected to login; session is no longer valid", url=url)

        if self.anti_detection is not None:
            await self.anti_detection.ensure_not_blocked(page)

        if self.captcha is not None:
            await self.captcha.ensure_resolved(page)

        selector, _ = await wait_for_any(
            page, selectors.DETAIL_READY, self.config.element_timeout_ms
        )
        if selector is None:
            raise NavigationError("Detail page loaded without merchant content", url=url)

        if self.anti_detection is not None:
            await self.anti_detection.simulate_human_behavior(page)

    async def fetch(
        self,
        page,
        url: str,
        merchant_name: Optional[str] = None,
        download_images: bool = False,
    ) -> MerchantDetail:
        """
        Extract one merchant.

        Returns:
            MerchantDetail, possibly with ``extraction_errors`` for fields
            whose strategies failed

        Raises:
            NavigationError: If the page could not be loaded
        """
        url = normalize_detail_url(url)
        logger.info(f"Fetching merchant detail: {merchant_name or url}")
        await self.open(page, url)

        detail = parse_merchant_detail_html(await page.content(), page.url, self.config.base_url)
        if not detail.name and merchant_name:
            detail.name = merchant_name
        if detail.extraction_errors:
            logger.warning(
                f"Partial extraction for {detail.name or url}: {len(detail.extraction_errors)} errors"
            )

        if download_images:
            detail.downloaded_images = await self.download_images(
                page, detail, merchant_name or detail.name or detail.fmtc_id or "unknown"
            )

        logger.info(
            f"Merchant detail extracted: {detail.name or url} "
            f"(fmtc_id={detail.fmtc_id}, networks={len(detail.networks)})"
        )
        return detail

    async def download_images(self, page, detail: MerchantDetail, merchant_name: str) -> Dict[str, str]:
        """
        Download logo and screenshot images through the page's browser context.

        A failed image is logged and skipped.

        Returns:
            Slot name -> local file path for each image written
        """
        images = {**detail.logo_urls, **detail.screenshot_urls}
        if not images:
            return {}

        target_dir = Path(self.config.image_dir) / sanitize_name(merchant_name)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create image directory {target_dir}: {e}")
            return {}

        saved: Dict[str, str] = {}
        for slot, image_url in images.items():
            full_url = urljoin(self.config.base_url.rstrip("/") + "/", image_url)
            path = target_dir / f"{slot}{image_extension(full_url)}"
            try:
                response = await page.request.get(
                    full_url, timeout=self.config.request_timeout_ms
                )
                if not response.ok:
                    logger.warning(f"Image {slot} returned HTTP {response.status}: {full_url}")
                    continue
                path.write_bytes(await response.body())
            except (PlaywrightError, OSError) as e:
                logger.warning(f"Failed to download image {slot} from {full_url}: {e}")
                continue
            saved[slot] = str(path)

        logger.info(f"Downloaded {len(saved)}/{len(images)} images for {merchant_name}")
        return saved
