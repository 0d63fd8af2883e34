from __future__ import annotations

import json
import re
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

_WEWORK_SUFFIX_RE = re.compile(r"/wework/?$")

# WorkTool "send message" instruction; titleList holds the receiver (nickname or group name).
SEND_MESSAGE_INSTRUCTION = 203
TEXT_MESSAGE_TYPE = 1


class WorkToolError(RuntimeError):
    def __init__(self, message: str, *, http_status: int | None = None, payload: dict[str, Any] | None = None):
        super().__init__(message)
        self.http_status = http_status
        self.payload = payload


class WorkToolRateLimited(WorkToolError):
    pass


def normalize_base_url(url: str) -> str:
    """Robots are often configured with the .../wework/ callback prefix; API paths hang off the host root."""
    base = (url or "").strip().rstrip("/")
    base = _WEWORK_SUFFIX_RE.sub("", base)
    return base.rstrip("/")


@dataclass(frozen=True)
class WorkToolClient:
    base_url: str
    robot_id: str
    timeout_seconds: int = 10
    # Called once per API call with a summary dict (used for ApiCallLog rows).
    observer: Callable[[dict[str, Any]], None] | None = None

    def url_for(self, path: str, params: dict[str, Any] | None = None) -> str:
        query = {"robotId": self.robot_id}
        query.update({k: v for k, v in (params or {}).items() if v is not None})
        return normalize_base_url(self.base_url) + path + "?" + urllib.parse.urlencode(query)

    def request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        retries: int = 2,
    ) -> tuple[int, dict[str, Any]]:
        """Returns (http_status, decoded JSON). Raises WorkToolError on transport or HTTP failure."""
        url = self.url_for(path, params)
        data = json.dumps(body, ensure_ascii=False).encode("utf-8") if body is not None else None

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, data=data, method=method)
                req.add_header("Accept", "application/json")
                if data is not None:
                    req.add_header("Content-Type", "application/json")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
                    try:
                        payload = json.loads(raw.decode("utf-8"))
                    except Exception as e:
                        raise WorkToolError(f"Invalid JSON from WorkTool ({path})", http_status=resp.status) from e
                    if not isinstance(payload, dict):
                        raise WorkToolError(f"Unexpected response from WorkTool ({path})", http_status=resp.status)
                    return resp.status, payload
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    # rate limit; brief backoff
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = WorkToolRateLimited("Rate limited (429)", http_status=429)
                    continue
                try:
                    text = e.read().decode("utf-8", errors="ignore")
                except Exception:
                    text = ""
                raise WorkToolError(f"HTTP {e.code} from WorkTool: {text[:300]}", http_status=e.code) from e
            except WorkToolError:
                raise
            except Exception as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        if isinstance(last_err, WorkToolError):
            raise last_err
        raise WorkToolError(f"WorkTool request failed after retries: {last_err}")

    def call(
        self,
        api_type: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Perform one API call and return the response payload.

        WorkTool answers HTTP 200 even for business failures; only `code == 200` counts as success.
        """
        started = time.monotonic()
        http_status: int | None = None
        payload: dict[str, Any] | None = None
        error: str | None = None
        try:
            http_status, payload = self.request_json(method, path, params=params, body=body)
            if payload.get("code") != 200:
                raise WorkToolError(
                    payload.get("message") or f"WorkTool returned code {payload.get('code')}",
                    http_status=http_status,
                    payload=payload,
                )
            return payload
        except WorkToolError as e:
            error = str(e)
            http_status = http_status or e.http_status
            payload = payload or e.payload
            raise
        finally:
            if self.observer is not None:
                self.observer(
                    {
                        "robot_id": self.robot_id,
                        "api_type": api_type,
                        "url": self.url_for(path, params),
                        "method": method,
                        "request_params": params,
                        "request_body": body,
                        "response_status": http_status,
                        "response_data": payload,
                        "response_time": int((time.monotonic() - started) * 1000),
                        "success": error is None,
                        "error_message": error,
                    }
                )

    # ---- endpoints ----

    def send_raw_message(self, to_name: str, content: str, message_type: int = TEXT_MESSAGE_TYPE) -> dict[str, Any]:
        if message_type != TEXT_MESSAGE_TYPE:
            raise ValueError("Only text messages (message_type=1) are supported.")
        body = {
            "socketType": 2,
            "list": [
                {
                    "type": SEND_MESSAGE_INSTRUCTION,
                    "titleList": [to_name],
                    "receivedContent": content,
                }
            ],
        }
        payload = self.call("send_message", "POST", "/wework/sendRawMessage", body=body)
        data = payload.get("data")
        return data if isinstance(data, dict) else {"result": data}

    def get_robot_info(self) -> dict[str, Any]:
        payload = self.call("robot_info", "GET", "/robot/robotInfo/get")
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    def is_online(self) -> bool:
        payload = self.call("online_status", "GET", "/robot/robotInfo/online")
        return payload.get("data") is True

    def _page(self, api_type: str, path: str, page: int, page_size: int) -> Any:
        payload = self.call(api_type, "GET", path, params={"page": page, "pageSize": page_size})
        return payload.get("data")

    def list_login_logs(self, page: int = 1, page_size: int = 20) -> Any:
        return self._page("login_logs", "/robot/robotInfo/onlineInfos", page, page_size)

    def list_raw_messages(self, page: int = 1, page_size: int = 20) -> Any:
        return self._page("raw_messages", "/wework/listRawMessage", page, page_size)

    def list_command_results(self, page: int = 1, page_size: int = 20) -> Any:
        return self._page("command_results", "/robot/rawMsg/list", page, page_size)

    def list_callback_logs(self, page: int = 1, page_size: int = 20) -> Any:
        return self._page("callback_logs", "/robot/qaLog/list", page, page_size)

    def update_robot_info(self, info: dict[str, Any]) -> Any:
        payload = self.call("update_info", "POST", "/robot/robotInfo/update", body=info)
        return payload.get("data")
