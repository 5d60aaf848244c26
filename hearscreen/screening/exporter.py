import json
import logging

import requests

_log = logging.getLogger("hearscreen.exporter")


def export_results_to_webapp(webapp_url, auth_token, payload, timeout=10):
    """POST the screening payload; returns ``(ok, message)`` and never raises on network errors."""
    if not webapp_url:
        return False, "Export URL not configured."
    try:
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["X-Auth"] = auth_token
        r = requests.post(webapp_url, headers=headers, data=json.dumps(payload), timeout=timeout)
        if r.ok:
            _log.info("Results exported to %s", webapp_url)
            return True, r.text
        else:
            _log.warning("Export to %s rejected: HTTP %s", webapp_url, r.status_code)
            return False, f"HTTP {r.status_code}: {r.text}"
    except requests.RequestException as e:
        _log.warning("Export to %s failed: %s", webapp_url, e)
        return False, str(e)
