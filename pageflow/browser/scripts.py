"""JavaScript installed into every frame of an automated page."""

from __future__ import annotations

import json

from pageflow.browser.actions import HELPERS

NOTIFY_BINDING = "__pageflowNotify"

HELPER_SCRIPT = (
    "(() => {"
    f"if (window.{HELPERS}) return;"
    "const helpers = {};"
    "helpers.click = (element) => {"
    "const event = new MouseEvent('click', {view: window, bubbles: true, cancelable: true});"
    "element.dispatchEvent(event);"
    "return true;"
    "};"
    "helpers.isInput = (element) => {"
    "if (!element) return false;"
    "const name = element.tagName.toLowerCase();"
    "if (element.contentEditable === 'true') return true;"
    "if (name === 'textarea') return true;"
    "return name === 'input' && /^(?:text|email|number|search|tel|url|password)$/i.test(element.type);"
    "};"
    "helpers.isFileInput = (element) => Boolean(element) && element.tagName.toLowerCase() === 'input' && element.type === 'file';"
    "helpers.input = (element, encoded) => {"
    "const text = new TextDecoder().decode(Uint8Array.from(atob(encoded), (c) => c.charCodeAt(0)));"
    "element.textContent = text;"
    "element.value = text;"
    "setTimeout(() => element.dispatchEvent(new InputEvent('input', {bubbles: true})), 1000);"
    "return true;"
    "};"
    "helpers.getData = (element) => {"
    "if (element.src !== undefined && element.src !== '') return element.src;"
    "return element.innerText;"
    "};"
    "helpers.isSrcUndefined = (element) => element.src === undefined || element.src === '';"
    "helpers.getOffset = (element) => {"
    "const rect = element.getBoundingClientRect();"
    "return [rect.left + window.scrollX, rect.top + window.scrollY];"
    "};"
    "helpers.getDomPath = (el) => {"
    "if (!el) return '';"
    "const stack = [];"
    "let isShadow = false;"
    "while (el.parentNode != null) {"
    "let count = 0, index = 0;"
    "for (const sibling of el.parentNode.childNodes) {"
    "if (sibling.nodeName === el.nodeName) { if (sibling === el) index = count; count++; }"
    "}"
    "let name = el.nodeName.toLowerCase();"
    "if (isShadow) { name += '::shadow'; isShadow = false; }"
    "stack.unshift(count > 1 ? `${name}:nth-of-type(${index + 1})` : name);"
    "el = el.parentNode;"
    "if (el.nodeType === 11) { isShadow = true; el = el.host; }"
    "}"
    "stack.splice(0, 1);"
    "return stack.join(' > ');"
    "};"
    f"window.{HELPERS} = helpers;"
    "let pending = null;"
    "const report = () => {"
    "pending = null;"
    f"if (typeof window.{NOTIFY_BINDING} !== 'function') return;"
    "const iframes = Array.from(document.querySelectorAll('iframe')).map((item) => item.src);"
    f"window.{NOTIFY_BINDING}('dom-mutated', {{iframes}});"
    "};"
    "const observe = () => {"
    "const root = document.documentElement;"
    "if (!root) return;"
    "new MutationObserver(() => { if (!pending) pending = setTimeout(report, 50); })"
    ".observe(root, {childList: true, subtree: true});"
    "};"
    "if (document.documentElement) observe();"
    "else document.addEventListener('DOMContentLoaded', observe);"
    "})();"
)


def missing_script(selector: str) -> str:
    return f"document.querySelector({json.dumps(selector)}) == null"


def src_missing_script(selector: str) -> str:
    return f"{HELPERS}.isSrcUndefined(document.querySelector({json.dumps(selector)}))"
