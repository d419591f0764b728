'''
Automation script for collecting direct lecture video URLs from the IOU Campus (Moodle) LMS.
This script automates login, finds the lecture sections of a course, opens every linked
"video" page, picks the best quality download link from its dropdown and writes a
grouped manifest that can be fed to a download manager.

Features:
- Filters lectures by JSON list, numeric ranges ("1-5,8") or comma separated titles
- Prefers HD links, falls back to SD
- Retries flaky page loads with exponential backoff

Usage:
    python main.py --username myusername --password mypassword --lectures 1-3
    python main.py --course "https://campus.iou.edu.gm/campus/course/view.php?id=316" --headless true

Every flag can also be given as an uppercased environment variable (or in a .env file).
'''

import re
import math
import json
import asyncio
import argparse
import logging
from typing import Callable, NamedTuple, Optional
from pathlib import Path
from playwright.async_api import async_playwright, BrowserContext, Page
from pydantic_settings import BaseSettings, SettingsConfigDict



BASE_URL = "https://campus.iou.edu.gm/campus"
LOGIN_URL = f"{BASE_URL}/auth/iouauth/login.php"
DEFAULT_COURSE_URL = f"{BASE_URL}/course/view.php?id=316"

DOWNLOADS_DIR = Path(__file__).resolve().parent / "downloads"
OUTPUT_FILE = DOWNLOADS_DIR / "video-urls.txt"

SECTION_SELECTOR = 'li.section.course-section'
LOGIN_MARKER_SELECTOR = f'a[href*="logout.php"], {SECTION_SELECTOR}'
REVEAL_SELECTOR = '#dlLinks'
DROPDOWN_ITEM_SELECTOR = 'a.dropdown-item'
REVEAL_TIMEOUT = 5000
DROPDOWN_TIMEOUT = 5000

TRUE_WORDS = ('1', 'true', 'yes', 'y')
FALSE_WORDS = ('0', 'false', 'no', 'n')

HD_PATTERN = re.compile(r'hd|high\s*quality|720p|1080p')
SD_PATTERN = re.compile(r'sd|normal|240p|360p|480p')
VIDEO_PATTERN = re.compile(r'video', re.I)
LECTURE_NUMBER_PATTERN = re.compile(r'lecture\s*(\d+)', re.I)

# Reads every course section as {title, items: [{text, href}]}
SECTIONS_SCRIPT = """
() => Array.from(document.querySelectorAll('li.section.course-section')).map((section) => {
  const heading = section.querySelector('h3.sectionname')
  const anchors = section.querySelectorAll('li.activity.activity-wrapper.modtype_page a.aalink')
  return {
    title: heading ? heading.textContent.trim() : '',
    items: Array.from(anchors).map((a) => ({
      text: (a.textContent || '').replace(/\\s+/g, ' ').trim(),
      href: a.getAttribute('href') ? a.href : '',
    })),
  }
})
"""

DROPDOWN_SCRIPT = """
() => Array.from(document.querySelectorAll('a.dropdown-item')).map((a) => ({
  text: (a.textContent || '').trim(),
  href: a.getAttribute('href') ? a.href : '',
}))
"""

# Set up logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


# Settings loader using pydantic. Values are kept as raw strings so that
# parse_bool/parse_number can fall back to defaults instead of failing.
class Settings(BaseSettings):
    USERNAME: str = "myusername"
    PASSWORD: str = "mypassword"
    COURSE: str = DEFAULT_COURSE_URL
    LECTURES: str = "[]"
    HEADLESS: str = "false"
    SLOWMO: str = "0"
    TIMEOUT_PAGE_LOAD: str = "60000"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


class LectureTarget(NamedTuple):
    title: str
    # True for titles generated from "5" or "1-3"; those must match a whole lecture number
    exact: bool = False


class LectureFilter(NamedTuple):
    """Explicit lecture targets, or the default "contains 'lecture'" predicate when empty."""
    targets: tuple = ()

    @property
    def titles(self) -> list[str]:
        return [t.title for t in self.targets]

    @property
    def is_default(self) -> bool:
        return not any(normalize(t.title) for t in self.targets)

    def matches(self, heading: str) -> bool:
        heading = normalize(heading)
        if self.is_default:
            return 'lecture' in heading
        for target in self.targets:
            title = normalize(target.title)
            if not title:
                continue
            if target.exact:
                if _token_pattern(title).search(heading):
                    return True
            elif title in heading:
                return True
        return False


class Config(NamedTuple):
    username: str
    password: str
    course_url: str
    lecture_filter: LectureFilter
    headless: bool
    slow_mo: float
    timeout: float
    log_level: str
    output_path: Path


class VideoPageRef(NamedTuple):
    lecture: str
    item_title: str
    href: str


class VideoLink(NamedTuple):
    title: str
    url: str


class LectureGroup(NamedTuple):
    lecture: str
    number: Optional[int]
    entries: list


class LectureLinks:
    """Video links collected per lecture title, in extraction order."""

    def __init__(self) -> None:
        self._links: dict[str, list[VideoLink]] = {}

    def add(self, lecture: str, link: VideoLink) -> None:
        self._links.setdefault(lecture, []).append(link)

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._links.values())

    def groups(self) -> list[LectureGroup]:
        """Groups ordered by lecture number; groups without a number go last, ties by title."""
        groups = [
            LectureGroup(lecture, lecture_number(lecture), list(entries))
            for lecture, entries in self._links.items()
        ]
        groups.sort(key=lambda g: (g.number is None, g.number if g.number is not None else 0, g.lecture))
        return groups


def normalize(text: Optional[str]) -> str:
    return (text or '').lower().strip()


def _token_pattern(title: str) -> re.Pattern:
    words = [re.escape(w) for w in title.split()]
    return re.compile(r'(?<!\w)' + r'\s*'.join(words) + r'(?!\w)')


def parse_bool(value: Optional[str], default: bool) -> bool:
    if isinstance(value, bool):
        return value
    word = normalize(value)
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    return default


def parse_number(value, default: float) -> float:
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return number


def parse_lecture_filter(raw: Optional[str]) -> LectureFilter:
    """Turn a --lectures specifier into a LectureFilter.

    A JSON array is taken literally. Anything else is split on commas, where
    "3" becomes "Lecture 3", "1-3" becomes Lecture 1..3 and other tokens are kept as titles.
    """
    if raw is None or not str(raw).strip():
        return LectureFilter()
    raw = str(raw)
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return LectureFilter(tuple(
            LectureTarget(item if isinstance(item, str) else str(item))
            for item in parsed if item is not None
        ))

    targets = []
    for token in raw.split(','):
        token = token.strip()
        if not token:
            continue
        range_m = re.fullmatch(r'(\d+)-(\d+)', token)
        if range_m:
            start, end = sorted((int(range_m.group(1)), int(range_m.group(2))))
            targets.extend(LectureTarget(f"Lecture {n}", exact=True) for n in range(start, end + 1))
        elif re.fullmatch(r'\d+', token):
            targets.append(LectureTarget(f"Lecture {int(token)}", exact=True))
        else:
            targets.append(LectureTarget(token))
    return LectureFilter(tuple(targets))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Collect direct lecture video URLs from IOU Campus.")
    parser.add_argument('--username', help='Your LMS username (overrides USERNAME / .env)')
    parser.add_argument('--password', help='Your LMS password (overrides PASSWORD / .env)')
    parser.add_argument('--course', help='Course page URL')
    parser.add_argument('--lectures', help='Lectures to collect: JSON array, "1-5,8" or comma separated titles')
    parser.add_argument('--headless', help='Run browser in headless mode (true/false)')
    parser.add_argument('--slowmo', help='Delay every browser action by this many milliseconds')
    parser.add_argument('--timeout', help='Timeout for page loads and waits in milliseconds')
    parser.add_argument('--log-level', dest='log_level', help='Logging level (DEBUG, INFO, ...)')
    return parser


def resolve_config(argv: Optional[list[str]] = None, settings: Optional[Settings] = None) -> Config:
    """Merge CLI flags over environment/.env settings over defaults."""
    settings = settings if settings is not None else Settings()
    args = build_parser().parse_args(argv)

    def pick(cli_value, env_value):
        return cli_value if cli_value is not None else env_value

    return Config(
        username=pick(args.username, settings.USERNAME),
        password=pick(args.password, settings.PASSWORD),
        course_url=pick(args.course, settings.COURSE),
        lecture_filter=parse_lecture_filter(pick(args.lectures, settings.LECTURES)),
        headless=parse_bool(pick(args.headless, settings.HEADLESS), False),
        slow_mo=parse_number(pick(args.slowmo, settings.SLOWMO), 0),
        timeout=parse_number(pick(args.timeout, settings.TIMEOUT_PAGE_LOAD), 60000),
        log_level=pick(args.log_level, settings.LOG_LEVEL).upper(),
        output_path=OUTPUT_FILE,
    )


async def retry(operation: Callable, attempts: int = 3, initial_delay: float = 1.5,
                backoff_factor: float = 2, on_error: Optional[Callable] = None):
    """Await operation() up to `attempts` times, sleeping with exponential backoff in between.

    on_error(error, attempt) is called after every failed attempt; errors it raises are ignored.
    The last error is re-raised once all attempts are used up.
    """
    attempts = max(1, attempts)
    delay = initial_delay
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if on_error is not None:
                try:
                    on_error(e, attempt)
                except Exception as observer_error:
                    logger.debug(f"Retry observer failed: {observer_error}")
            if attempt < attempts:
                await asyncio.sleep(delay)
            delay *= backoff_factor
    raise last_error


async def navigate_with_retries(page: Page, url: str, attempts: int = 3, timeout: float = 60000,
                                wait_until: str = 'networkidle'):
    def warn(error, attempt):
        logger.warning(f"Navigation attempt {attempt}/{attempts} to {url} failed: {error}")

    return await retry(
        lambda: page.goto(url, timeout=timeout, wait_until=wait_until),
        attempts=attempts,
        initial_delay=1.5,
        backoff_factor=2,
        on_error=warn,
    )


async def first_success(awaitables: list, timeout: float) -> bool:
    """True as soon as one awaitable finishes without raising, False if none does within timeout (ms)."""
    tasks = [asyncio.ensure_future(a) for a in awaitables]
    try:
        for next_done in asyncio.as_completed(tasks, timeout=timeout / 1000):
            try:
                await next_done
                return True
            except asyncio.TimeoutError:
                raise
            except Exception as e:
                logger.debug(f"Wait condition failed: {e}")
        return False
    except asyncio.TimeoutError:
        return False
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                task.exception()


async def login(page: Page, username: str, password: str, timeout: float = 60000) -> bool:
    """Automate login. Returns False (after a warning) if no success signal was seen."""
    logger.info("Navigating to login page...")
    await navigate_with_retries(page, LOGIN_URL, timeout=timeout)

    await page.fill('input[name="username"]', username)
    await page.fill('input[name="password"]', password)

    # Start both watchers before submitting so a fast redirect is not missed
    signals = [
        asyncio.ensure_future(page.wait_for_url(
            lambda url: 'login' not in url.lower(), wait_until='networkidle', timeout=timeout)),
        asyncio.ensure_future(page.wait_for_selector(LOGIN_MARKER_SELECTOR, timeout=timeout)),
    ]
    try:
        await page.click('button[type="submit"]')
    except Exception:
        for signal in signals:
            signal.cancel()
        raise
    if await first_success(signals, timeout):
        logger.info("Login successful.")
        return True
    logger.warning("Could not confirm login; continuing anyway.")
    return False


def select_video_pages(sections: list[dict], lecture_filter: LectureFilter) -> list[VideoPageRef]:
    """Video page links of every section whose heading matches the filter, in document order."""
    refs = []
    for section in sections:
        title = (section.get('title') or '').strip()
        if not lecture_filter.matches(title):
            continue
        for item in section.get('items') or []:
            text = item.get('text') or ''
            href = item.get('href') or ''
            if not href or not VIDEO_PATTERN.search(text):
                continue
            refs.append(VideoPageRef(title, text, href))
    return refs


async def scan_course(page: Page, course_url: str, lecture_filter: LectureFilter,
                      timeout: float = 60000) -> list[VideoPageRef]:
    await navigate_with_retries(page, course_url, timeout=timeout)
    logger.info(f"Opened course page: {course_url}")
    try:
        await page.wait_for_selector(SECTION_SELECTOR, timeout=timeout)
    except Exception as e:
        logger.warning(f"No course sections appeared on {course_url}: {e}")

    sections = await page.evaluate(SECTIONS_SCRIPT) or []
    logger.debug(f"Course page has {len(sections)} section(s).")
    if lecture_filter.is_default:
        logger.info("No lecture filter given, using every section titled 'lecture'.")
    else:
        logger.info(f"Lecture filter: {lecture_filter.titles}")
    return select_video_pages(sections, lecture_filter)


def pick_download_url(anchors: list[dict]) -> Optional[str]:
    """Prefer the first HD option, then the first SD option."""
    def text_of(anchor):
        return normalize(anchor.get('text'))

    hd = next((a for a in anchors if HD_PATTERN.search(text_of(a))), None)
    sd = next((a for a in anchors if SD_PATTERN.search(text_of(a))), None)
    return (hd and hd.get('href')) or (sd and sd.get('href')) or None


async def extract_download_url(page: Page, href: str, timeout: float = 60000) -> Optional[str]:
    await navigate_with_retries(page, href, timeout=timeout)

    # The dropdown may already be open
    try:
        await page.click(REVEAL_SELECTOR, delay=50, timeout=REVEAL_TIMEOUT)
    except Exception as e:
        logger.debug(f"Could not click {REVEAL_SELECTOR}: {e}")
    try:
        await page.wait_for_selector(DROPDOWN_ITEM_SELECTOR, timeout=DROPDOWN_TIMEOUT)
    except Exception as e:
        logger.debug(f"No dropdown items appeared: {e}")

    anchors = await page.evaluate(DROPDOWN_SCRIPT) or []
    return pick_download_url(anchors)


async def extract_video_links(context: BrowserContext, refs: list[VideoPageRef],
                              links: LectureLinks, timeout: float = 60000) -> LectureLinks:
    """Visit every video page one at a time and collect its download link into `links`."""
    for idx, ref in enumerate(refs, 1):
        logger.info(f"[{idx}/{len(refs)}] Opening {ref.item_title} ({ref.lecture})")
        video_page = await context.new_page()
        try:
            url = await extract_download_url(video_page, ref.href, timeout=timeout)
            if url:
                links.add(ref.lecture, VideoLink(ref.item_title, url))
                logger.info(f"Fetched: {ref.item_title} -> {url}")
            else:
                logger.warning(f"No download link found on page: {ref.item_title}")
        except Exception as e:
            logger.warning(f"Failed to process {ref.item_title}: {e}")
        finally:
            await video_page.close()
    return links


def lecture_number(title: str) -> Optional[int]:
    m = LECTURE_NUMBER_PATTERN.search(title) or re.search(r'\d+', title)
    if not m:
        return None
    return int(m.group(1) if m.groups() else m.group(0))


def lecture_header(title: str) -> str:
    m = LECTURE_NUMBER_PATTERN.search(title)
    if m:
        return f"Lecture {int(m.group(1))}"
    return title


def format_manifest(groups: list[LectureGroup]) -> str:
    lines = []
    for group in groups:
        lines.append(f"# {lecture_header(group.lecture)}")
        for entry in group.entries:
            lines.append(entry.url)
        lines.append('')
    return '\n'.join(lines)


def write_manifest(text: str, output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(text, encoding='utf-8')
    return output_path


async def run(config: Config) -> Optional[Path]:
    """Login, scan the course, collect links and write the manifest. Returns the written path."""
    downloads_dir = config.output_path.parent
    downloads_dir.mkdir(parents=True, exist_ok=True)

    async with async_playwright() as p:
        browser = await p.chromium.launch(
            headless=config.headless,
            slow_mo=config.slow_mo,
            downloads_path=str(downloads_dir),
        )
        try:
            context = await browser.new_context(accept_downloads=True)
            page = await context.new_page()

            await login(page, config.username, config.password, timeout=config.timeout)

            refs = await scan_course(page, config.course_url, config.lecture_filter, timeout=config.timeout)
            if not refs:
                logger.info("No matching lecture video pages found.")
                return None
            logger.info(f"Found {len(refs)} video page(s) across lectures.")

            links = await extract_video_links(context, refs, LectureLinks(), timeout=config.timeout)

            output = format_manifest(links.groups())
            print('\nVideo download URLs (grouped by lecture):\n')
            print(output)

            out_file = write_manifest(output, config.output_path)
            logger.info(f"Saved URLs to: {out_file}")
            return out_file
        finally:
            await browser.close()


async def main(argv: Optional[list[str]] = None) -> None:
    config = resolve_config(argv)
    logger.setLevel(getattr(logging, config.log_level, logging.INFO))
    await run(config)


if __name__ == '__main__':
    asyncio.run(main())
