"""
Browser primitives used by the timetable fetcher.

BrowserSession is the small surface the fetcher needs (navigate, locate,
click, read, download, screenshot). SeleniumBrowserSession implements it
with Chrome. A session is a context manager and owns its browser: leaving
the with-block always quits Chrome and removes the download scratch folder.
"""

import base64
import logging
import os
import shutil
import tempfile
import threading
import time
from typing import Callable, Optional

from selenium import webdriver
from selenium.common.exceptions import TimeoutException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from scraper.retry_helper import OperationCancelled

logger = logging.getLogger(__name__)

PARTIAL_DOWNLOAD_SUFFIXES = (".crdownload", ".tmp", ".part")


class BrowserSession:
    """Interface the fetcher drives. Selectors starting with "//" are XPath, others CSS."""

    def navigate(self, url: str) -> None:
        raise NotImplementedError

    def locate(self, selector: str):
        raise NotImplementedError

    def locate_all(self, selector: str) -> list:
        raise NotImplementedError

    def click(self, element, force: bool = False) -> None:
        raise NotImplementedError

    def read_attribute(self, element, name: str):
        raise NotImplementedError

    def read_text(self, element) -> str:
        raise NotImplementedError

    def wait_for_download(self, trigger: Callable[[], None]) -> str:
        """Run trigger and return the path of the file it downloaded."""
        raise NotImplementedError

    def screenshot(self, path: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def _locator(selector: str) -> tuple:
    if selector.startswith("//") or selector.startswith("(//"):
        return By.XPATH, selector
    return By.CSS_SELECTOR, selector


class SeleniumBrowserSession(BrowserSession):
    """Chrome driven through Selenium, downloads land in a private scratch folder."""

    def __init__(self, headless: bool = True, timeout: float = 15.0,
                 download_timeout: float = 60.0, download_root: str = None,
                 cancel_event: Optional[threading.Event] = None):
        self.headless = headless
        self.timeout = timeout
        self.download_timeout = download_timeout
        self.cancel_event = cancel_event
        if download_root:
            os.makedirs(download_root, exist_ok=True)
        self.incoming_dir = tempfile.mkdtemp(prefix="incoming-", dir=download_root)
        self.driver = None

    def __enter__(self):
        self._setup_driver()
        return self

    def _setup_driver(self):
        """Set up Chrome WebDriver."""
        if self.driver:
            return
        logger.info("Setting up Chrome options...")
        options = Options()
        if self.headless:
            options.add_argument("--headless=new")
        options.add_argument("--no-sandbox")
        options.add_argument("--disable-dev-shm-usage")
        options.add_argument("--disable-gpu")
        options.add_argument("--window-size=1920,1080")
        # Reduce logging noise
        options.add_argument("--log-level=3")
        options.add_experimental_option('excludeSwitches', ['enable-logging'])
        options.add_experimental_option("prefs", {
            "download.default_directory": self.incoming_dir,
            "download.prompt_for_download": False,
            "download.directory_upgrade": True,
        })

        service = Service(ChromeDriverManager().install())
        self.driver = webdriver.Chrome(service=service, options=options)
        self.driver.set_page_load_timeout(self.timeout)
        self.driver.execute_cdp_cmd("Page.setDownloadBehavior", {
            "behavior": "allow",
            "downloadPath": self.incoming_dir,
        })
        logger.info("Chrome WebDriver initialized successfully")

    def navigate(self, url: str) -> None:
        self._setup_driver()
        logger.info(f"Navigating to: {url}")
        self.driver.get(url)

    def locate(self, selector: str):
        return WebDriverWait(self.driver, self.timeout).until(
            EC.presence_of_element_located(_locator(selector))
        )

    def locate_all(self, selector: str) -> list:
        try:
            return WebDriverWait(self.driver, self.timeout).until(
                EC.presence_of_all_elements_located(_locator(selector))
            )
        except TimeoutException:
            return []

    def click(self, element, force: bool = False) -> None:
        if force:
            self.driver.execute_script("arguments[0].click();", element)
            return
        WebDriverWait(self.driver, self.timeout).until(EC.element_to_be_clickable(element)).click()

    def read_attribute(self, element, name: str):
        return element.get_attribute(name)

    def read_text(self, element) -> str:
        # textContent also covers items of a closed (hidden) dropdown panel
        return element.get_attribute("textContent") or ""

    def wait_for_download(self, trigger: Callable[[], None]) -> str:
        before = set(os.listdir(self.incoming_dir))
        trigger()

        deadline = time.monotonic() + self.download_timeout
        while time.monotonic() < deadline:
            finished = [
                name for name in os.listdir(self.incoming_dir)
                if name not in before and not name.endswith(PARTIAL_DOWNLOAD_SUFFIXES)
            ]
            if finished:
                path = os.path.join(self.incoming_dir, finished[0])
                logger.info(f"Download finished: {path}")
                return path
            self._poll_pause(0.25)

        raise TimeoutException(f"No download finished within {self.download_timeout}s")

    def _poll_pause(self, seconds: float) -> None:
        if self.cancel_event is None:
            time.sleep(seconds)
            return
        if self.cancel_event.wait(seconds):
            raise OperationCancelled("Cancelled while waiting for the download")

    def screenshot(self, path: str) -> None:
        data = self.driver.execute_cdp_cmd("Page.captureScreenshot", {
            "format": "png",
            "captureBeyondViewport": True,
        })
        with open(path, "wb") as f:
            f.write(base64.b64decode(data["data"]))

    def close(self) -> None:
        """Close the browser."""
        if self.driver:
            self.driver.quit()
            self.driver = None
            logger.info("Browser closed")
        shutil.rmtree(self.incoming_dir, ignore_errors=True)
