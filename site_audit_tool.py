# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "beautifulsoup4",
#   "httpx",
#   "pandas",
#   "rich",
# ]
# ///
"""Site Audit CLI Tool.

Crawls a list of domains for broken links, re-probes links that failed
without a status, optionally runs Lighthouse desktop/mobile performance
audits per domain, and writes everything into a single CSV report.
"""

from __future__ import annotations

import argparse
import contextlib
import asyncio
import json
import os
import sys
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Awaitable, Callable
from urllib.parse import urldefrag, urljoin, urlparse

import httpx
import pandas as pd
from bs4 import BeautifulSoup
from rich.console import Console
from rich.table import Table

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONCURRENCY = 5
DEFAULT_TIMEOUT = 100.0
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:124.0) "
    "Gecko/20100101 Firefox/124.0"
)
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 300.0
DEFAULT_LIGHTHOUSE = "lighthouse"
LIGHTHOUSE_TIMEOUT = 300.0

# Rate-limit (HTTP 429) handling inside a single crawl
RATE_LIMIT_RETRIES = 3
RATE_LIMIT_BASE_DELAY = 2.0

LINKS_REPORT_FILENAME = "broken-links-report.csv"
COMBINED_REPORT_FILENAME = "combined-report.csv"

CONFIG_FILENAMES = ["siteaudit.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "siteaudit",
]

# Tag name -> attribute holding a URL worth checking
LINK_ATTRIBUTES = {
    "a": "href",
    "link": "href",
    "img": "src",
    "script": "src",
    "iframe": "src",
    "source": "src",
    "video": "src",
    "audio": "src",
    "embed": "src",
    "track": "src",
}

HTML_CONTENT_TYPES = {"text/html", "application/xhtml+xml"}

# Lighthouse device profiles: profile -> (label, extra CLI flags)
PROFILES = {
    "desktop": ("Desktop", ["--preset=desktop"]),
    "mobile": ("Mobile", ["--form-factor=mobile"]),
}

# Performance signals: (audit_id, description, suggestion)
KEY_AUDITS = [
    (
        "first-contentful-paint",
        "First Contentful Paint (FCP): Aim to load critical content as quickly as possible.",
        "Consider optimizing images and using lazy loading.",
    ),
    (
        "speed-index",
        "Speed Index: Measures how quickly content is visually displayed.",
        "Reduce unused CSS, minimize render-blocking resources, and defer non-critical JS.",
    ),
    (
        "largest-contentful-paint",
        "Largest Contentful Paint (LCP): Measures the time it takes for the largest content element to load.",
        "Optimize images, use a CDN, and reduce server response times.",
    ),
    (
        "total-blocking-time",
        "Total Blocking Time (TBT): Measures the time during which the main thread is blocked and unable to respond to user input.",
        "Minimize JavaScript execution time, avoid long tasks, and split large tasks into smaller ones.",
    ),
    (
        "cumulative-layout-shift",
        "Cumulative Layout Shift (CLS): Measures unexpected layout shifts during page load.",
        "Ensure images have explicit width and height, avoid injecting ads above existing content.",
    ),
]

NO_ISSUES_MESSAGE = "No significant issues detected."
SCORE_UNAVAILABLE = "N/A"

# Report schemas: (row_key, column_title)
LINK_REPORT_COLUMNS = [
    ("source", "Source Domain"),
    ("page", "Page URL"),
    ("error", "Error Code"),
    ("asset_type", "Asset Type"),
]

COMBINED_REPORT_COLUMNS = LINK_REPORT_COLUMNS + [
    ("desktop_score", "Desktop Performance Score"),
    ("desktop_issues", "Desktop Issues"),
    ("mobile_score", "Mobile Performance Score"),
    ("mobile_issues", "Mobile Issues"),
]

out_console = Console()
err_console = Console(stderr=True, highlight=False)


def _log(message: str, style: str | None = None) -> None:
    """Print a progress line to stderr (URLs are never treated as markup)."""
    err_console.print(message, style=style, markup=False)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SiteAuditError(Exception):
    """Base class for errors raised by the audit pipeline."""


class CrawlError(SiteAuditError):
    """Raised when a domain cannot be crawled at all."""


class ProbeError(SiteAuditError):
    """Raised when a Lighthouse run fails or produces unusable output."""


# ---------------------------------------------------------------------------
# Pipeline Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CrawlOptions:
    """Settings handed to the link checker for one crawl."""

    recurse: bool = True
    concurrency: int = DEFAULT_CONCURRENCY
    retry: bool = True
    timeout: float = DEFAULT_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT


@dataclass(frozen=True)
class PipelineConfig:
    """Which stages run per domain and how the retry pass behaves."""

    include_performance: bool = False
    crawl_options: CrawlOptions = field(default_factory=CrawlOptions)
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    lighthouse_bin: str = DEFAULT_LIGHTHOUSE
    lighthouse_timeout: float = LIGHTHOUSE_TIMEOUT
    verbose: bool = False


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        _log(f"Error: malformed config file {config_path}: {exc}", style="red")
        sys.exit(1)
    except OSError as exc:
        _log(f"Error: cannot read config file {config_path}: {exc}", style="red")
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            _log(f"Error: profile '{profile_name}' not found in config. Available: {available}", style="red")
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "domains": "config_domains",
        "domains_file": "file",
        "output": "output",
        "concurrency": "concurrency",
        "timeout": "timeout",
        "user_agent": "user_agent",
        "max_retries": "max_retries",
        "retry_delay": "retry_delay",
        "no_recurse": "no_recurse",
        "lighthouse": "lighthouse",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "lighthouse", None):
        args.lighthouse = os.environ.get("LIGHTHOUSE_PATH") or DEFAULT_LIGHTHOUSE

    return args


def build_pipeline_config(args: argparse.Namespace, include_performance: bool) -> PipelineConfig:
    """Turn resolved CLI/config values into a PipelineConfig, exiting on bad values."""
    try:
        concurrency = int(getattr(args, "concurrency", DEFAULT_CONCURRENCY))
        max_retries = int(getattr(args, "max_retries", DEFAULT_MAX_RETRIES))
        retry_delay = float(getattr(args, "retry_delay", DEFAULT_RETRY_DELAY))
        timeout = float(getattr(args, "timeout", DEFAULT_TIMEOUT))
    except (TypeError, ValueError) as exc:
        _log(f"Error: invalid numeric setting in config or flags: {exc}", style="red")
        sys.exit(1)

    if concurrency < 1:
        _log("Error: --concurrency must be at least 1", style="red")
        sys.exit(1)
    if max_retries < 0:
        _log("Error: --max-retries cannot be negative", style="red")
        sys.exit(1)
    if retry_delay < 0 or timeout <= 0:
        _log("Error: --retry-delay and --timeout must be positive", style="red")
        sys.exit(1)

    crawl_options = CrawlOptions(
        recurse=not getattr(args, "no_recurse", False),
        concurrency=concurrency,
        retry=True,
        timeout=timeout,
        user_agent=getattr(args, "user_agent", None) or DEFAULT_USER_AGENT,
    )
    return PipelineConfig(
        include_performance=include_performance,
        crawl_options=crawl_options,
        max_retries=max_retries,
        retry_delay=retry_delay,
        lighthouse_bin=getattr(args, "lighthouse", None) or DEFAULT_LIGHTHOUSE,
        verbose=bool(getattr(args, "verbose", False)),
    )


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def _add_crawl_arguments(subparser: argparse.ArgumentParser, default_output: str) -> None:
    subparser.add_argument("domains", nargs="*", default=[], help="Domains to audit (e.g. https://example.com)")
    subparser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=None, help="File with one domain per line")
    subparser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=None, help=f"CSV report path (default: {default_output})")
    subparser.add_argument("--concurrency", dest="concurrency", action=TrackingAction, type=int, default=DEFAULT_CONCURRENCY, help="Simultaneous requests within one domain crawl")
    subparser.add_argument("--timeout", dest="timeout", action=TrackingAction, type=float, default=DEFAULT_TIMEOUT, help="Per-request timeout in seconds")
    subparser.add_argument("--user-agent", dest="user_agent", action=TrackingAction, default=DEFAULT_USER_AGENT, help="User-Agent header for crawl requests")
    subparser.add_argument("--max-retries", dest="max_retries", action=TrackingAction, type=int, default=DEFAULT_MAX_RETRIES, help="Re-probe attempts for links with status 0 (0 disables)")
    subparser.add_argument("--retry-delay", dest="retry_delay", action=TrackingAction, type=float, default=DEFAULT_RETRY_DELAY, help="Seconds to wait between re-probe attempts")
    subparser.add_argument("--no-recurse", dest="no_recurse", action=TrackingStoreTrueAction, default=False, help="Only check links on the start page")


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="site-audit",
        description="Broken link and Lighthouse performance audit for a list of domains",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- links ---
    links_parser = subparsers.add_parser("links", help="Broken link report only")
    _add_crawl_arguments(links_parser, LINKS_REPORT_FILENAME)

    # --- combined ---
    combined_parser = subparsers.add_parser("combined", help="Broken links plus desktop/mobile Lighthouse scores")
    _add_crawl_arguments(combined_parser, COMBINED_REPORT_FILENAME)
    combined_parser.add_argument("--lighthouse", dest="lighthouse", action=TrackingAction, default=None, help="Lighthouse executable (or set LIGHTHOUSE_PATH env var)")

    # --- quick-check ---
    quick_check_parser = subparsers.add_parser("quick-check", help="Lighthouse desktop + mobile scores for one URL")
    quick_check_parser.add_argument("url", help="URL to check")
    quick_check_parser.add_argument("--lighthouse", dest="lighthouse", action=TrackingAction, default=None, help="Lighthouse executable (or set LIGHTHOUSE_PATH env var)")

    return parser


# ---------------------------------------------------------------------------
# Domain Handling
# ---------------------------------------------------------------------------


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    # Add scheme if missing
    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    if not parsed.netloc or "." not in parsed.netloc:
        return None
    return url


def load_domains(
    domain_args: list[str],
    file_path: str | None,
    config_domains: list[str] | None = None,
) -> list[str]:
    """Load domains from positional args, a file, or the config list. Returns validated list."""
    raw_domains: list[str] = []

    if domain_args:
        raw_domains.extend(domain_args)
    elif file_path:
        path = Path(file_path)
        if not path.is_file():
            _log(f"Error: domain file not found: {file_path}", style="red")
            sys.exit(1)
        raw_domains.extend(path.read_text().splitlines())
    elif config_domains:
        raw_domains.extend(config_domains)

    seen: set[str] = set()
    validated: list[str] = []
    for raw in raw_domains:
        cleaned = validate_url(raw)
        if cleaned:
            if cleaned not in seen:
                seen.add(cleaned)
                validated.append(cleaned)
        elif raw.strip() and not raw.strip().startswith("#"):
            _log(f"Warning: skipping invalid domain: {raw.strip()}", style="yellow")

    if not validated:
        _log("Error: no valid domains provided.", style="red")
        sys.exit(1)

    return validated


# ---------------------------------------------------------------------------
# Link Checker
# ---------------------------------------------------------------------------


def extract_links(html: str, base_url: str) -> list[str]:
    """Return absolute http(s) URLs referenced by a page, in document order."""
    soup = BeautifulSoup(html, "html.parser")

    base_tag = soup.find("base", href=True)
    if base_tag:
        base_url = urljoin(base_url, base_tag["href"].strip())

    links: list[str] = []
    seen: set[str] = set()
    for tag in soup.find_all(list(LINK_ATTRIBUTES)):
        value = tag.get(LINK_ATTRIBUTES[tag.name])
        if not value or not isinstance(value, str):
            continue
        value = value.strip()
        if not value or value.startswith("#"):
            continue
        try:
            absolute, _ = urldefrag(urljoin(base_url, value))
            scheme = urlparse(absolute).scheme
        except ValueError as exc:
            _log(f"Warning: skipping malformed link {value!r} on {base_url}: {exc}", style="yellow")
            continue
        if scheme not in ("http", "https"):
            continue
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links


def _retry_after_seconds(response: httpx.Response, attempt: int) -> float:
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            pass
    return RATE_LIMIT_BASE_DELAY * (2**attempt)


async def _request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    options: CrawlOptions,
    stream: bool = False,
) -> httpx.Response:
    """Send one request, waiting out 429 responses when options.retry is set.

    With stream=True the body is left unread and the caller must close the response.
    """
    for attempt in range(RATE_LIMIT_RETRIES + 1):
        request = client.build_request(
            method,
            url,
            headers={"User-Agent": options.user_agent},
            timeout=options.timeout,
        )
        response = await client.send(request, stream=stream)
        if response.status_code != 429 or not options.retry or attempt == RATE_LIMIT_RETRIES:
            return response
        await response.aclose()
        await asyncio.sleep(_retry_after_seconds(response, attempt))
    return response


def _media_type(response: httpx.Response) -> str:
    return response.headers.get("content-type", "").split(";")[0].strip().lower()


async def check_link(
    client: httpx.AsyncClient,
    url: str,
    options: CrawlOptions,
    fetch_body: bool = False,
) -> tuple[dict, str | None]:
    """Check a single URL.

    Returns the link result and, when fetch_body is set and the URL is a
    reachable HTML page, the page source. Only HTML bodies are downloaded.
    Transport failures (DNS, timeouts, resets, redirect loops) produce
    status 0 rather than an exception.
    """
    result: dict[str, object] = {
        "url": url,
        "state": "BROKEN",
        "status": 0,
        "content_type": None,
        "failure": None,
    }
    html = None
    try:
        if fetch_body:
            response = await _request(client, "GET", url, options, stream=True)
            try:
                if 200 <= response.status_code < 400 and _media_type(response) in HTML_CONTENT_TYPES:
                    await response.aread()
                    html = response.text
            finally:
                await response.aclose()
        else:
            response = await _request(client, "HEAD", url, options)
            if response.status_code >= 400:
                # Some servers reject HEAD outright
                response = await _request(client, "GET", url, options)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        result["failure"] = f"{type(exc).__name__}: {exc}"
        return result, None

    status = response.status_code
    media_type = _media_type(response)
    result["status"] = status
    result["state"] = "OK" if 200 <= status < 400 else "BROKEN"
    result["content_type"] = media_type or None
    return result, html


async def crawl_site(
    client: httpx.AsyncClient,
    start_url: str,
    options: CrawlOptions,
    verbose: bool = False,
) -> list[dict]:
    """Crawl a site and return a result for every discovered link, in discovery order.

    Pages on the start URL's host are parsed for further links and, when
    options.recurse is set, followed. Raises CrawlError if the start URL
    itself cannot be reached.
    """
    start_url, _ = urldefrag(start_url)
    parsed = urlparse(start_url)
    if not parsed.path:
        start_url = parsed._replace(path="/").geturl()
    host = parsed.netloc.lower()
    semaphore = asyncio.Semaphore(max(1, options.concurrency))
    discovered = [start_url]
    seen = {start_url}
    results: dict[str, dict] = {}

    async def visit(url: str, parent: str | None, is_page: bool) -> None:
        if is_page:
            _log(f"Scanning page: {url}")
        async with semaphore:
            result, html = await check_link(client, url, options, fetch_body=is_page)
        result["parent"] = parent
        results[url] = result
        if verbose and result["state"] == "OK":
            _log(f"  OK {url} ({result['status']})", style="dim")
        if html is None:
            return

        children = []
        for link in extract_links(html, url):
            if link not in seen:
                seen.add(link)
                discovered.append(link)
                children.append(link)
        tasks = [
            asyncio.ensure_future(visit(child, url, options.recurse and urlparse(child).netloc.lower() == host))
            for child in children
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # Don't leave sibling checks running once this crawl has failed
            for task in tasks:
                task.cancel()
            raise

    await visit(start_url, None, True)

    root = results[start_url]
    if root["status"] == 0:
        raise CrawlError(f"unable to reach {start_url}: {root['failure']}")
    return [results[link] for link in discovered]


async def crawl_domain(
    client: httpx.AsyncClient,
    domain: str,
    options: CrawlOptions,
    verbose: bool = False,
) -> list[dict]:
    """Crawl one domain and return its broken links as report records."""
    _log(f"Starting scan for domain: {domain}")
    broken_links = []
    for result in await crawl_site(client, domain, options, verbose):
        if result["state"] != "BROKEN":
            continue
        url = result["url"]
        status = result["status"]
        if status == 0:
            _log(f"Status 0 found for {url}. Will retry.", style="yellow")
        else:
            _log(f"Broken link found: {url} (Status: {status})", style="red")
        broken_links.append({
            "source": domain,
            "page": url,
            "error": status,
            "asset_type": result["content_type"] or "unknown",
        })
    return broken_links


async def probe_link(
    client: httpx.AsyncClient,
    url: str,
    options: CrawlOptions,
    verbose: bool = False,
) -> int:
    """Re-check one URL on its own and return its status (0 if still unreachable)."""
    single_options = replace(options, recurse=False, concurrency=1)
    result, _ = await check_link(client, url, single_options)
    if verbose and result["failure"]:
        _log(f"  Probe for {url} failed: {result['failure']}", style="dim")
    return int(result["status"])


def build_http_client(options: CrawlOptions) -> httpx.AsyncClient:
    """Create the shared HTTP client used for every crawl and re-probe."""
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=options.timeout,
        headers={"User-Agent": options.user_agent},
        limits=httpx.Limits(max_connections=max(1, options.concurrency) * 2),
    )


# ---------------------------------------------------------------------------
# Status 0 Retry
# ---------------------------------------------------------------------------


def _format_delay(seconds: float) -> str:
    if seconds >= 60:
        return f"{seconds / 60:g} minute(s)"
    return f"{seconds:g} second(s)"


async def _retry_with_delay(
    url: str,
    probe: Callable[[str], Awaitable[int]],
    retries: int,
    delay_seconds: float,
) -> int:
    """Return the first non-zero status the probe reports, or 0 once every attempt failed."""
    for attempt in range(1, retries + 1):
        try:
            status = await probe(url)
        except Exception as exc:
            _log(f"Attempt {attempt} for {url} raised: {exc}", style="yellow")
            status = 0

        if status:
            _log(f"Retry successful for: {url} (Status: {status})", style="green")
            return status

        if attempt < retries:
            _log(
                f"Attempt {attempt} for {url} failed with status 0. "
                f"Retrying in {_format_delay(delay_seconds)}...",
                style="yellow",
            )
            await asyncio.sleep(delay_seconds)
    return 0


async def retry_broken_links(
    broken_links: list[dict],
    probe: Callable[[str], Awaitable[int]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
) -> list[dict]:
    """Re-probe links that failed with status 0.

    Links are retried one at a time. Links with a real error status pass
    through unchanged; a status 0 link that never recovers keeps status 0.
    The output has the same length and order as the input.
    """
    retried_links = []
    for link in broken_links:
        if link["error"] != 0:
            retried_links.append(dict(link))
            continue

        status = await _retry_with_delay(link["page"], probe, max_retries, retry_delay)
        if status:
            retried_links.append({**link, "error": status})
        else:
            _log(f"Failed to recover link: {link['page']} after {max_retries} attempt(s)", style="red")
            retried_links.append(dict(link))
    return retried_links


# ---------------------------------------------------------------------------
# Lighthouse
# ---------------------------------------------------------------------------


async def run_lighthouse(
    url: str,
    profile: str,
    lighthouse_bin: str = DEFAULT_LIGHTHOUSE,
    timeout: float = LIGHTHOUSE_TIMEOUT,
) -> dict:
    """Run the Lighthouse CLI for one URL and profile and return its JSON result."""
    _, profile_flags = PROFILES[profile]
    command = [
        lighthouse_bin,
        url,
        "--output",
        "json",
        "--quiet",
        "--chrome-flags=--headless",
        *profile_flags,
    ]
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ProbeError(f"cannot start {lighthouse_bin}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        # The process may have exited on its own after the timeout fired
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise ProbeError(f"Lighthouse timed out after {timeout:g}s for {url} ({profile})")

    if process.returncode != 0:
        detail = stderr.decode(errors="replace").strip()[:200]
        raise ProbeError(f"Lighthouse exited with code {process.returncode} for {url} ({profile}): {detail}")

    try:
        return json.loads(stdout)
    except ValueError as exc:
        raise ProbeError(f"Lighthouse returned invalid JSON for {url} ({profile}): {exc}") from exc


def parse_lighthouse_issues(lighthouse_result: dict) -> str:
    """Summarize the key performance audits that scored below 100."""
    audits = lighthouse_result.get("audits") or {}
    actionable_items = []

    for audit_id, description, suggestion in KEY_AUDITS:
        audit = audits.get(audit_id)
        if not audit:
            continue
        score = audit.get("score")
        if score is not None and score < 1:
            actionable_items.append(f"{description} (Score: {round(score * 100)}): {suggestion}")

    if not actionable_items:
        return NO_ISSUES_MESSAGE
    return "; ".join(actionable_items)


async def measure_performance(
    url: str,
    profile: str,
    lighthouse_bin: str = DEFAULT_LIGHTHOUSE,
    timeout: float = LIGHTHOUSE_TIMEOUT,
) -> dict:
    """Return {"score", "issues"} for one profile. Never raises; failures yield "N/A"."""
    label, _ = PROFILES[profile]
    try:
        lighthouse_result = await run_lighthouse(url, profile, lighthouse_bin, timeout)
        score = lighthouse_result["categories"]["performance"]["score"]
        if score is None:
            raise ProbeError("Lighthouse reported no performance score")
        return {
            "score": round(score * 100),
            "issues": parse_lighthouse_issues(lighthouse_result),
        }
    except (ProbeError, KeyError, TypeError, ValueError, AttributeError) as exc:
        _log(f"Error running Lighthouse ({label}) for {url}: {exc}", style="red")
        return {"score": SCORE_UNAVAILABLE, "issues": f"Failed to run Lighthouse ({label})"}


# ---------------------------------------------------------------------------
# Report Output
# ---------------------------------------------------------------------------


def output_csv(dataframe: pd.DataFrame, output_path: Path) -> str:
    """Write DataFrame to CSV. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    dataframe.to_csv(output_path, index=False)
    return str(output_path)


class ReportSink:
    """Collects report rows across domains and writes them to one CSV at the end."""

    def __init__(self, path: str | Path, columns: list[tuple[str, str]]):
        self.path = Path(path)
        self.columns = list(columns)
        self.rows: list[dict] = []

    def append(self, rows: list[dict]) -> None:
        self.rows.extend(rows)

    def flush(self) -> str | None:
        """Write all rows, overwriting any existing file. No file is written for zero rows."""
        if not self.rows:
            _log("No results to report.")
            return None
        keys = [key for key, _ in self.columns]
        dataframe = pd.DataFrame(self.rows, columns=keys).rename(columns=dict(self.columns))
        return output_csv(dataframe, self.path)


def _print_run_summary(rows: list[dict], domains: list[str], failed_domains: list[str], include_performance: bool) -> None:
    """Print domain/link counts and average scores to stderr."""
    _log("\nSummary:")
    _log(f"  Domains processed: {len(domains) - len(failed_domains)}/{len(domains)}")
    if failed_domains:
        _log(f"  Failed domains:    {', '.join(failed_domains)}", style="red")
    _log(f"  Broken links:      {len(rows)}")
    if not rows:
        return

    dataframe = pd.DataFrame(rows)
    unresolved = int((dataframe["error"] == 0).sum())
    if unresolved:
        _log(f"  Still status 0:    {unresolved}", style="yellow")

    if include_performance:
        per_domain = dataframe.drop_duplicates(subset="source")
        for label, column in (("Desktop", "desktop_score"), ("Mobile", "mobile_score")):
            scores = pd.to_numeric(per_domain[column], errors="coerce").dropna()
            if len(scores) > 0:
                _log(f"  Avg {label.lower()} score: {scores.mean():.0f}")


def _score_rating(score: object) -> str:
    if not isinstance(score, (int, float)):
        return "-"
    return "GOOD" if score >= 90 else ("NEEDS WORK" if score >= 50 else "POOR")


def format_performance_table(url: str, results: list[dict]) -> Table:
    """Build a rich table of per-profile scores and issues."""
    table = Table(title=url, show_lines=True)
    table.add_column("Profile", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Rating")
    table.add_column("Issues")
    for result in results:
        table.add_row(
            result["profile"],
            str(result["score"]),
            _score_rating(result["score"]),
            result["issues"].replace("; ", "\n"),
        )
    return table


# ---------------------------------------------------------------------------
# Domain Pipeline
# ---------------------------------------------------------------------------


async def _process_domain(
    client: httpx.AsyncClient,
    domain: str,
    config: PipelineConfig,
) -> list[dict]:
    """Run crawl -> retry -> (desktop, mobile audits) for one domain and return its rows."""
    options = config.crawl_options

    async def probe(url: str) -> int:
        return await probe_link(client, url, options, config.verbose)

    broken_links = await crawl_domain(client, domain, options, config.verbose)
    retried_links = await retry_broken_links(broken_links, probe, config.max_retries, config.retry_delay)

    rows = [
        {
            "source": domain,
            "page": link["page"],
            "error": link["error"],
            "asset_type": link["asset_type"],
        }
        for link in retried_links
    ]
    if not config.include_performance:
        return rows

    desktop = await measure_performance(domain, "desktop", config.lighthouse_bin, config.lighthouse_timeout)
    mobile = await measure_performance(domain, "mobile", config.lighthouse_bin, config.lighthouse_timeout)
    for row in rows:
        row["desktop_score"] = desktop["score"]
        row["desktop_issues"] = desktop["issues"]
        row["mobile_score"] = mobile["score"]
        row["mobile_issues"] = mobile["issues"]
    return rows


async def process_domains(
    domains: list[str],
    config: PipelineConfig,
    sink: ReportSink,
    client: httpx.AsyncClient | None = None,
) -> list[str]:
    """Run the pipeline for each domain in order, appending rows to sink.

    A failure anywhere in one domain's pipeline is logged and that domain
    contributes no rows; the remaining domains still run. Returns the list
    of domains that failed.
    """
    failed_domains: list[str] = []
    owns_client = client is None
    if owns_client:
        client = build_http_client(config.crawl_options)

    try:
        for domain in domains:
            try:
                domain_rows = await _process_domain(client, domain, config)
            except Exception as exc:
                _log(f"Error processing domain {domain}: {exc}", style="red")
                failed_domains.append(domain)
                continue
            sink.append(domain_rows)
            _log(f"Completed processing for domain: {domain}", style="green")
    finally:
        if owns_client:
            await client.aclose()

    return failed_domains


# ---------------------------------------------------------------------------
# Subcommands: links / combined
# ---------------------------------------------------------------------------


async def _run_report(args: argparse.Namespace, include_performance: bool) -> None:
    """Shared body of the links and combined subcommands."""
    domains = load_domains(
        getattr(args, "domains", []),
        getattr(args, "file", None),
        getattr(args, "config_domains", None),
    )
    config = build_pipeline_config(args, include_performance)

    if include_performance:
        columns = COMBINED_REPORT_COLUMNS
        output_path = getattr(args, "output", None) or COMBINED_REPORT_FILENAME
    else:
        columns = LINK_REPORT_COLUMNS
        output_path = getattr(args, "output", None) or LINKS_REPORT_FILENAME

    mode_label = "links + performance" if include_performance else "links"
    _log(f"Auditing {len(domains)} domain(s) ({mode_label})")

    sink = ReportSink(output_path, columns)
    failed_domains = await process_domains(domains, config, sink)

    written = sink.flush()
    if written:
        _log(f"Report saved to {written}", style="green")
    _print_run_summary(sink.rows, domains, failed_domains, include_performance)


async def cmd_links(args: argparse.Namespace) -> None:
    """Crawl every domain and write the broken link report."""
    await _run_report(args, include_performance=False)


async def cmd_combined(args: argparse.Namespace) -> None:
    """Crawl every domain, run both Lighthouse profiles, and write the combined report."""
    await _run_report(args, include_performance=True)


# ---------------------------------------------------------------------------
# Subcommand: quick-check
# ---------------------------------------------------------------------------


async def cmd_quick_check(args: argparse.Namespace) -> None:
    """Run both Lighthouse profiles for one URL and print a table to stdout."""
    url = validate_url(args.url)
    if not url:
        _log(f"Error: invalid URL: {args.url}", style="red")
        sys.exit(1)

    lighthouse_bin = getattr(args, "lighthouse", None) or DEFAULT_LIGHTHOUSE
    results = []
    for profile, (label, _) in PROFILES.items():
        _log(f"Running Lighthouse ({label}) for {url}...")
        performance = await measure_performance(url, profile, lighthouse_bin)
        results.append({"profile": label, **performance})

    out_console.print(format_performance_table(url, results))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    # Load config
    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    # Apply profile and config defaults
    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    # Dispatch to subcommand
    commands = {
        "links": cmd_links,
        "combined": cmd_combined,
        "quick-check": cmd_quick_check,
    }

    handler = commands.get(args.command)
    if handler:
        asyncio.run(handler(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
