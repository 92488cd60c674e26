"""
Fingerprint countermeasure scripts.

The scripts here are installed with ``page.add_init_script`` so they run
before any page script. The values they fake come from ``stealth_values``
and are plain data, so what gets spoofed can be checked without a browser.

Countermeasures:
- Remove known automation marker globals (chromedriver, selenium, ...)
- Add sparse pixel noise to canvas read-back (toDataURL / toBlob)
- Override WebGL UNMASKED_VENDOR / UNMASKED_RENDERER queries
- Fabricate navigator.webdriver, window.chrome, plugins, languages,
  platform, hardwareConcurrency, deviceMemory and connection
"""
import json
import logging
from typing import Any, Dict, Optional

from fmtc_crawler.browser_config import IdentityProfile

logger = logging.getLogger(__name__)

CANVAS_NOISE_PROBABILITY = 0.001
CANVAS_NOISE_AMPLITUDE = 5
WEBGL_UNMASKED_VENDOR = 37445
WEBGL_UNMASKED_RENDERER = 37446

AUTOMATION_GLOBALS = [
    "cdc_adoQpoasnfa76pfcZLmcfl_Array",
    "cdc_adoQpoasnfa76pfcZLmcfl_Promise",
    "cdc_adoQpoasnfa76pfcZLmcfl_Symbol",
    "$cdc_asdjflasutopfhvcZLmcfl_",
    "__webdriver_script_fn",
    "__webdriver_script_func",
    "__webdriver_script_function",
    "__fxdriver_id",
    "__fxdriver_unwrapped",
    "__driver_evaluate",
    "__webdriver_evaluate",
    "__selenium_evaluate",
    "__fxdriver_evaluate",
    "__driver_unwrapped",
    "__webdriver_unwrapped",
    "__selenium_unwrapped",
    "_Selenium_IDE_Recorder",
    "_selenium",
    "calledSelenium",
    "$chrome_asyncScriptInfo",
    "__$webdriverAsyncExecutor",
    "__playwright__binding__",
    "__pwInitScripts",
    "webdriver",
    "driver-evaluate",
    "webdriver-evaluate",
    "selenium-evaluate",
    "webdriverCommand",
    "webdriver-evaluate-response",
]

PLUGINS = [
    {
        "name": "Chrome PDF Plugin",
        "filename": "internal-pdf-viewer",
        "description": "Portable Document Format",
        "mime": "application/x-google-chrome-pdf",
    },
    {
        "name": "Chrome PDF Viewer",
        "filename": "mhjfbmdgcfjbbpaeojofohoefgiehjai",
        "description": "",
        "mime": "application/pdf",
    },
    {
        "name": "Native Client",
        "filename": "internal-nacl-plugin",
        "description": "",
        "mime": "application/x-nacl",
    },
]


STEALTH_SCRIPTS = {
    "automation_globals": """
        __AUTOMATION_GLOBALS__.forEach((name) => {
            try { delete window[name]; } catch (e) {}
            try { delete document[name]; } catch (e) {}
        });
    """,
    "webdriver": """
        Object.defineProperty(navigator, 'webdriver', {
            get: () => undefined,
            configurable: true
        });
    """,
    "canvas_noise": """
        (() => {
            const probability = __CANVAS_PROBABILITY__;
            const amplitude = __CANVAS_AMPLITUDE__;
            const shift = () => Math.floor(Math.random() * (amplitude * 2)) - amplitude;
            const clamp = (v) => Math.max(0, Math.min(255, v));
            const addNoise = (canvas) => {
                const ctx = canvas.getContext && canvas.getContext('2d');
                if (!ctx || !canvas.width || !canvas.height) return;
                const image = ctx.getImageData(0, 0, canvas.width, canvas.height);
                const data = image.data;
                const noise = { r: shift(), g: shift(), b: shift(), a: shift() };
                for (let i = 0; i < data.length; i += 4) {
                    if (Math.random() < probability) {
                        data[i] = clamp(data[i] + noise.r);
                        data[i + 1] = clamp(data[i + 1] + noise.g);
                        data[i + 2] = clamp(data[i + 2] + noise.b);
                        data[i + 3] = clamp(data[i + 3] + noise.a);
                    }
                }
                ctx.putImageData(image, 0, 0);
            };
            ['toDataURL', 'toBlob'].forEach((name) => {
                const original = HTMLCanvasElement.prototype[name];
                Object.defineProperty(HTMLCanvasElement.prototype, name, {
                    value: function (...args) {
                        try { addNoise(this); } catch (e) {}
                        return original.apply(this, args);
                    },
                    configurable: true,
                    writable: true
                });
            });
        })();
    """,
    "webgl": """
        (() => {
            const patch = (proto) => {
                if (!proto) return;
                const getParameter = proto.getParameter;
                proto.getParameter = function (parameter) {
                    if (parameter === __WEBGL_VENDOR_PARAM__) return __WEBGL_VENDOR__;
                    if (parameter === __WEBGL_RENDERER_PARAM__) return __WEBGL_RENDERER__;
                    return getParameter.call(this, parameter);
                };
            };
            patch(window.WebGLRenderingContext && WebGLRenderingContext.prototype);
            patch(window.WebGL2RenderingContext && WebGL2RenderingContext.prototype);
        })();
    """,
    "chrome_runtime": """
        if (!window.chrome) {
            Object.defineProperty(window, 'chrome', {
                writable: true,
                enumerable: true,
                configurable: false,
                value: {
                    runtime: {
                        connect: function () {},
                        sendMessage: function () {},
                        getManifest: function () { return {}; },
                        getURL: function () {}
                    },
                    app: { isInstalled: false },
                    csi: function () {},
                    loadTimes: function () {
                        const now = Date.now() / 1000;
                        return {
                            requestTime: now - Math.random(),
                            startLoadTime: now - Math.random(),
                            finishLoadTime: now - Math.random(),
                            navigationType: 'Other'
                        };
                    }
                }
            });
        }
    """,
    "permissions": """
        if (navigator.permissions && navigator.permissions.query) {
            const originalQuery = navigator.permissions.query.bind(navigator.permissions);
            navigator.permissions.query = (parameters) => (
                parameters && parameters.name === 'notifications'
                    ? Promise.resolve({ state: Notification.permission })
                    : originalQuery(parameters)
            );
        }
    """,
    "plugins": """
        Object.defineProperty(navigator, 'plugins', {
            get: () => {
                const plugins = __PLUGINS__.map((p) => ({
                    0: { type: p.mime, suffixes: 'pdf', description: p.description, enabledPlugin: null },
                    name: p.name,
                    filename: p.filename,
                    description: p.description,
                    length: 1
                }));
                plugins.item = (index) => plugins[index];
                plugins.namedItem = (name) => plugins.find(p => p.name === name);
                plugins.refresh = () => {};
                return plugins;
            },
            configurable: true
        });
    """,
    "navigator": """
        Object.defineProperty(navigator, 'languages', { get: () => __LANGUAGES__, configurable: true });
        Object.defineProperty(navigator, 'platform', { get: () => __PLATFORM__, configurable: true });
        Object.defineProperty(navigator, 'hardwareConcurrency', { get: () => __HARDWARE_CONCURRENCY__, configurable: true });
        Object.defineProperty(navigator, 'deviceMemory', { get: () => __DEVICE_MEMORY__, configurable: true });
        Object.defineProperty(navigator, 'connection', {
            get: () => (__CONNECTION__),
            configurable: true
        });
    """,
}


def stealth_values(
    profile: IdentityProfile,
    canvas_noise_probability: float = CANVAS_NOISE_PROBABILITY,
) -> Dict[str, Any]:
    """Values the init script will fake for a given identity."""
    language = profile.locale
    base_language = language.split("-")[0]
    languages = [language] if base_language == language else [language, base_language]

    return {
        "automation_globals": list(AUTOMATION_GLOBALS),
        "canvas_probability": canvas_noise_probability,
        "canvas_amplitude": CANVAS_NOISE_AMPLITUDE,
        "webgl_vendor_param": WEBGL_UNMASKED_VENDOR,
        "webgl_renderer_param": WEBGL_UNMASKED_RENDERER,
        "webgl_vendor": profile.webgl_vendor,
        "webgl_renderer": profile.webgl_renderer,
        "plugins": PLUGINS,
        "languages": languages,
        "platform": profile.platform,
        "hardware_concurrency": profile.hardware_concurrency,
        "device_memory": profile.device_memory,
        "connection": {"effectiveType": "4g", "rtt": 100, "downlink": 10.0, "saveData": False},
    }


def build_stealth_script(
    profile: IdentityProfile,
    canvas_noise_probability: float = CANVAS_NOISE_PROBABILITY,
    include: Optional[list] = None,
) -> str:
    """Render the combined init script for an identity.

    Args:
        profile: Identity whose values are faked
        canvas_noise_probability: Per-pixel noise probability for canvas read-back
        include: Optional subset of STEALTH_SCRIPTS names, in order

    Returns:
        JavaScript source suitable for ``add_init_script``
    """
    values = stealth_values(profile, canvas_noise_probability)
    names = include or list(STEALTH_SCRIPTS)

    parts = []
    for name in names:
        script = STEALTH_SCRIPTS[name]
        for key, value in values.items():
            script = script.replace(f"__{key.upper()}__", json.dumps(value))
        parts.append(f"try {{{script}}} catch (e) {{}}")

    return "\n".join(parts)


async def verify_stealth(page) -> Dict[str, Any]:
    """Read back the spoofed surface from a live page."""
    return await page.evaluate("""
        () => ({
            webdriver: navigator.webdriver,
            plugins: navigator.plugins.length,
            languages: navigator.languages,
            platform: navigator.platform,
            hardwareConcurrency: navigator.hardwareConcurrency,
            deviceMemory: navigator.deviceMemory,
            hasChrome: !!window.chrome
        })
    """)
