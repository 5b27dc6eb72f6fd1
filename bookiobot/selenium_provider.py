from __future__ import annotations

import logging
import time

from selenium import webdriver
from selenium.common.exceptions import NoSuchElementException, TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.common.keys import Keys
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from bookiobot.domain import AccountCredentials, LoginFailure, LoginResult

logger = logging.getLogger(__name__)

# The login form has changed markup a few times; try the known variants in order.
USERNAME_LOCATORS = [
    (By.CSS_SELECTOR, 'input[type="email"]'),
    (By.CSS_SELECTOR, 'input[name="username"]'),
    (By.CSS_SELECTOR, 'input[name="email"]'),
    (By.CSS_SELECTOR, 'input[type="text"]'),
]
PASSWORD_LOCATOR = (By.CSS_SELECTOR, 'input[type="password"]')
SUBMIT_LOCATORS = [
    (By.CSS_SELECTOR, 'button[type="submit"]'),
    (By.CSS_SELECTOR, 'input[type="submit"]'),
    (By.XPATH, '//button[contains(., "Prihlásiť")]'),
    (By.XPATH, '//button[contains(., "Login")]'),
    (By.XPATH, '//button[contains(., "Sign in")]'),
]


def start_driver(*, headless: bool) -> webdriver.Chrome:
    options = Options()
    if headless:
        options.add_argument("--headless=new")
    options.add_argument("--disable-gpu")
    options.add_argument("--no-sandbox")
    options.add_argument("--window-size=1920,1080")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-blink-features=AutomationControlled")
    options.add_argument("--lang=sk-SK")
    options.add_argument(
        "--user-agent=Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/139.0 Safari/537.36"
    )

    service = Service(ChromeDriverManager().install())
    return webdriver.Chrome(service=service, options=options)


def _find_first(driver: webdriver.Chrome, locators: list[tuple[str, str]]):
    for by, value in locators:
        elements = driver.find_elements(by, value)
        if elements:
            return elements[0]
    return None


def log_in(driver: webdriver.Chrome, *, login_url: str, username: str, password: str, wait_seconds: int = 30) -> None:
    driver.get(login_url)

    wait = WebDriverWait(driver, wait_seconds)
    wait.until(lambda d: _find_first(d, USERNAME_LOCATORS) is not None)

    user_box = _find_first(driver, USERNAME_LOCATORS)
    user_box.clear()
    user_box.send_keys(username)

    password_box = driver.find_element(*PASSWORD_LOCATOR)
    password_box.clear()
    password_box.send_keys(password)

    submit = _find_first(driver, SUBMIT_LOCATORS)
    if submit is not None:
        submit.click()
    else:
        logger.info("No submit button matched, submitting with Enter")
        password_box.send_keys(Keys.ENTER)

    wait.until(EC.url_changes(login_url))


def read_session_cookie(driver: webdriver.Chrome, cookie_name: str, *, wait_seconds: float = 3.0) -> dict | None:
    # The session cookie is sometimes set by a request that finishes after the redirect.
    cookie = driver.get_cookie(cookie_name)
    if cookie is None and wait_seconds > 0:
        time.sleep(wait_seconds)
        cookie = driver.get_cookie(cookie_name)
    return cookie


class SeleniumLoginDriver:
    """Logs in through a real Chrome window and hands back the session cookie."""

    def __init__(
        self,
        *,
        cookie_name: str,
        headless: bool = True,
        wait_seconds: int = 30,
        cookie_wait_seconds: float = 3.0,
    ) -> None:
        self.cookie_name = cookie_name
        self.headless = headless
        self.wait_seconds = wait_seconds
        self.cookie_wait_seconds = cookie_wait_seconds

    def login(self, credentials: AccountCredentials, login_url: str) -> LoginResult:
        logger.info("Starting browser (headless=%s)", self.headless)
        try:
            driver = start_driver(headless=self.headless)
        except WebDriverException as e:
            raise LoginFailure(f"Could not start browser: {e.msg or e}") from e

        try:
            logger.info("Logging in: %s", login_url)
            log_in(
                driver,
                login_url=login_url,
                username=credentials.username,
                password=credentials.password,
                wait_seconds=self.wait_seconds,
            )
            cookie = read_session_cookie(driver, self.cookie_name, wait_seconds=self.cookie_wait_seconds)
        except TimeoutException as e:
            raise LoginFailure(f"Login page did not respond within {self.wait_seconds}s") from e
        except (NoSuchElementException, WebDriverException) as e:
            raise LoginFailure(f"Login form interaction failed: {type(e).__name__}") from e
        finally:
            try:
                driver.quit()
            except Exception:
                logger.warning("Failed to quit driver cleanly", exc_info=True)

        if not cookie or not cookie.get("value"):
            raise LoginFailure(f'Authentication cookie "{self.cookie_name}" not found after login')

        lifetime = None
        if cookie.get("expiry"):
            lifetime = float(cookie["expiry"]) - time.time()

        logger.info("Extracted %s cookie", self.cookie_name)
        return LoginResult(
            token_value=str(cookie["value"]),
            cookie_name=self.cookie_name,
            observed_lifetime_seconds=lifetime,
        )
