from typing import Callable, Dict, FrozenSet, List, Optional
import json
import re
import weakref
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from urllib.parse import urlsplit
from loguru import logger
from playwright.async_api import Page, Request, Response, Route
from playwright.async_api import Error as PlaywrightError

CHALLENGE_API_HOST = "challenges.cloudflare.com"
CHALLENGE_PLATFORM_PATH = "/cdn-cgi/challenge-platform/"
REPORT_BEACON_MARKER = "challenges.cloudflare.com/reports/"

# Resource types to block everywhere (saves bandwidth, speeds up loads)
BLOCKED_RESOURCE_TYPES: FrozenSet[str] = frozenset({"image", "stylesheet", "font", "media"})

CF_CLEARANCE_PATTERN = re.compile(r"cf_clearance=([^;,\s]+)")

TURNSTILE_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Turnstile</title></head>
<body>
<div class="turnstile"></div>
<script src="https://challenges.cloudflare.com/turnstile/v0/api.js?onload=onloadTurnstileCallback" defer></script>
<script>
  window.onloadTurnstileCallback = function () {
    turnstile.render('.turnstile', {
      sitekey: %(site_key)s,
      callback: function (token) {
        var c = document.createElement('input');
        c.type = 'hidden';
        c.name = 'cf-response';
        c.value = token;
        document.body.appendChild(c);
      },
    });
  };
</script>
</body>
</html>
"""

class Action(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"
    FULFILL = "fulfill"

@dataclass
class InterceptionRule:
    """Maps matching requests to allow, block, or a locally served body"""
    name: str
    match: Callable[[str, str], bool]
    action: Action
    body: Optional[bytes] = None
    content_type: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

@dataclass
class RuleSet:
    """Ordered rules, first match wins; ``fallback`` applies when none match"""
    name: str
    rules: List[InterceptionRule]
    fallback: Action = Action.ALLOW
    capture_clearance: bool = False

    def decide(self, url: str, resource_type: str) -> InterceptionRule:
        for rule in self.rules:
            if rule.match(url, resource_type):
                return rule
        return InterceptionRule(name="fallback", match=lambda u, t: True, action=self.fallback)

@dataclass
class ClearanceCapture:
    """Header-derived cf_clearance candidate; weaker than the cookie jar"""
    candidate: Optional[str] = None
    user_agent: Optional[str] = None

    def offer(self, value: str, user_agent: Optional[str]) -> bool:
        if self.candidate is not None:
            return False
        self.candidate = value
        self.user_agent = user_agent
        return True

def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()

def _is_challenge_origin(url: str, resource_type: str) -> bool:
    return urlsplit(url).hostname == CHALLENGE_API_HOST or CHALLENGE_PLATFORM_PATH in url

def _is_heavy_resource(url: str, resource_type: str) -> bool:
    return resource_type in BLOCKED_RESOURCE_TYPES

def _script_rule(script_url: str, body: bytes) -> InterceptionRule:
    target = urlsplit(script_url)

    def match(url: str, resource_type: str) -> bool:
        parts = urlsplit(url)
        return parts.hostname == target.hostname and parts.path == target.path

    return InterceptionRule(
        name="local-turnstile-script",
        match=match,
        action=Action.FULFILL,
        body=body,
        content_type="application/javascript",
        headers={"Access-Control-Allow-Origin": "*"},
    )

def default_rules() -> RuleSet:
    return RuleSet(
        name="default",
        rules=[InterceptionRule(name="heavy-resources", match=_is_heavy_resource, action=Action.BLOCK)],
        fallback=Action.ALLOW,
    )

def render_turnstile_page(site_key: str) -> str:
    # JSON string literal, with "<" escaped so the key cannot close the script tag
    return TURNSTILE_PAGE_TEMPLATE % {"site_key": json.dumps(site_key).replace("<", "\\u003c")}

def turnstile_rules(domain: str, site_key: str, script_body: Optional[bytes] = None,
                    script_url: Optional[str] = None) -> RuleSet:
    """Serve a synthetic widget page for ``domain``; only challenge origins get through"""
    targets = {domain, domain.rstrip("/"), domain.rstrip("/") + "/"}
    rules: List[InterceptionRule] = []
    if script_body is not None and script_url:
        rules.append(_script_rule(script_url, script_body))
    rules += [
        InterceptionRule(
            name="synthetic-document",
            match=lambda url, resource_type: resource_type == "document" and url in targets,
            action=Action.FULFILL,
            body=render_turnstile_page(site_key).encode(),
            content_type="text/html",
        ),
        InterceptionRule(
            name="report-beacon",
            match=lambda url, resource_type: REPORT_BEACON_MARKER in url,
            action=Action.BLOCK,
        ),
        InterceptionRule(name="challenge-origins", match=_is_challenge_origin, action=Action.ALLOW),
    ]
    return RuleSet(name="turnstile", rules=rules, fallback=Action.BLOCK)

def iuam_rules(domain: str, script_body: Optional[bytes] = None,
               script_url: Optional[str] = None) -> RuleSet:
    """Let the real target and challenge origins through, abort every other origin"""
    target_origin = _origin(domain)
    rules: List[InterceptionRule] = []
    if script_body is not None and script_url:
        rules.append(_script_rule(script_url, script_body))
    rules += [
        InterceptionRule(name="challenge-origins", match=_is_challenge_origin, action=Action.ALLOW),
        InterceptionRule(name="heavy-resources", match=_is_heavy_resource, action=Action.BLOCK),
        InterceptionRule(
            name="target-origin",
            match=lambda url, resource_type: _origin(url) == target_origin,
            action=Action.ALLOW,
        ),
    ]
    return RuleSet(name="iuam", rules=rules, fallback=Action.BLOCK, capture_clearance=True)

def extract_clearance(set_cookie: str, min_length: int) -> Optional[str]:
    for match in CF_CLEARANCE_PATTERN.finditer(set_cookie):
        if len(match.group(1)) >= min_length:
            return match.group(1)
    return None

def load_script(path: Optional[str]) -> Optional[bytes]:
    """Read the bundled Turnstile client script, if one is configured"""
    if not path:
        return None
    try:
        return Path(path).read_bytes()
    except OSError as e:
        logger.warning(f"Failed to load local Turnstile script {path}: {str(e)}")
        return None

@dataclass
class _Attachment:
    route_handler: Callable
    response_handler: Optional[Callable]
    capture: ClearanceCapture

class InterceptionRouter:
    """Attaches per-page request routing and response inspection"""

    def __init__(self, min_clearance_length: int = 20, script_url: Optional[str] = None,
                 script_body: Optional[bytes] = None):
        self.min_clearance_length = min_clearance_length
        self.script_url = script_url
        self.script_body = script_body
        self._attached: "weakref.WeakKeyDictionary[Page, _Attachment]" = weakref.WeakKeyDictionary()

    def turnstile_rules(self, domain: str, site_key: str) -> RuleSet:
        return turnstile_rules(domain, site_key, self.script_body, self.script_url)

    def iuam_rules(self, domain: str) -> RuleSet:
        return iuam_rules(domain, self.script_body, self.script_url)

    async def attach(self, page: Page, rule_set: RuleSet) -> ClearanceCapture:
        """Install ``rule_set`` on ``page``, replacing whatever was there"""
        await self.detach(page)
        capture = ClearanceCapture()

        async def route_handler(route: Route, request: Request):
            rule = rule_set.decide(request.url, request.resource_type)
            try:
                if rule.action == Action.FULFILL:
                    await route.fulfill(
                        status=200,
                        content_type=rule.content_type,
                        body=rule.body,
                        headers=rule.headers or None,
                    )
                elif rule.action == Action.BLOCK:
                    await route.abort()
                else:
                    await route.continue_()
            except PlaywrightError as e:
                # Route already handled or page gone
                logger.debug(f"Route {rule.name} failed for {request.url[:80]}: {e}")

        response_handler = None
        if rule_set.capture_clearance:
            async def response_handler(response: Response):
                await self._inspect_response(response, capture)
            page.on("response", response_handler)

        await page.route("**/*", route_handler)
        self._attached[page] = _Attachment(route_handler, response_handler, capture)
        logger.debug(f"Attached {rule_set.name} interception rules")
        return capture

    async def detach(self, page: Page):
        attachment = self._attached.pop(page, None)
        if attachment is None:
            return
        if attachment.response_handler is not None:
            page.remove_listener("response", attachment.response_handler)
        try:
            await page.unroute("**/*", attachment.route_handler)
        except PlaywrightError as e:
            logger.debug(f"Unroute failed: {e}")

    async def _inspect_response(self, response: Response, capture: ClearanceCapture):
        if CHALLENGE_PLATFORM_PATH not in response.url or capture.candidate is not None:
            return
        try:
            set_cookies = await response.header_values("set-cookie")
            if not set_cookies:
                return
            value = extract_clearance("\n".join(set_cookies), self.min_clearance_length)
            if value is None:
                return
            user_agent = await response.request.header_value("user-agent")
        except PlaywrightError as e:
            logger.debug(f"Could not inspect challenge response: {e}")
            return
        if capture.offer(value, user_agent):
            logger.info("Captured candidate cf_clearance from response headers")
