import time
from typing import Dict, List, Optional

import requests

from matric_recon.errors import PersistenceError
from matric_recon.models import InternalRecord
from matric_recon.state_store import SCOPE_ALL, SCOPE_NON_NULL, SCOPES

RETRY_STATUSES = (429, 500, 502, 503, 504)


class HttpRecordStore:
    """Storage collaborator talking to the admin API.

    GET  {base_url}/students?scope=all|non_null  -> {"students": [...]}
    PUT  {base_url}/students/{id}/class-of-degree {"class_of_degree": ...}
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: int = 60, max_retries: int = 5):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    def _call_with_backoff(self, method, url, json=None, params=None):
        backoff = 1
        r = None
        for _ in range(self.max_retries):
            r = requests.request(method, url, headers=self.headers, json=json, params=params, timeout=self.timeout)
            if r.status_code not in RETRY_STATUSES:
                r.raise_for_status()
                return r
            time.sleep(backoff)
            backoff = min(backoff * 2, 16)
        r.raise_for_status()
        return r

    def load_internal_scope(self, scope: str = SCOPE_ALL) -> List[InternalRecord]:
        if scope not in SCOPES:
            raise ValueError(f"scope must be one of {SCOPES}, got {scope!r}")
        print(f"📥 Loading students from {self.base_url} (scope={scope})")
        r = self._call_with_backoff("GET", f"{self.base_url}/students", params={"scope": scope})
        data: Dict = r.json()
        out = []
        for s in data.get("students", []):
            value = s.get("class_of_degree")
            if scope == SCOPE_NON_NULL and (value is None or not str(value).strip()):
                continue
            out.append(InternalRecord(id=s["student_id"], key=s["matric_no"], current_value=value, name=s.get("name")))
        print(f"   ✅ {len(out)} students loaded")
        return out

    def persist(self, student_id: int, new_value: Optional[str]):
        url = f"{self.base_url}/students/{student_id}/class-of-degree"
        try:
            r = requests.request("PUT", url, headers=self.headers, json={"class_of_degree": new_value}, timeout=self.timeout)
        except requests.RequestException as e:
            raise PersistenceError(student_id, f"request failed: {e}", retryable=True) from e
        if r.status_code in (200, 201, 204):
            return
        raise PersistenceError(
            student_id,
            f"API returned {r.status_code}: {r.text[:200]}",
            retryable=r.status_code in RETRY_STATUSES,
        )
