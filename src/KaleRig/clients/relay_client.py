import logging
import threading
import time
from typing import Any, Dict, Optional

import requests

from ..core.state import Session
from ..errors import ContractRejection, TransportError, decode_contract_error

CREDITS_HEADER = "X-Credits-Remaining"


class RelayClient :
    """Submits signed transaction envelopes through a relay service."""

    def __init__(self , url: str , token: str , session: Optional[Session] = None , timeout: int = 30 , max_retries: int = 3) :
        self.url = url
        self.token = token
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = session
        self.logger = logging.getLogger("KaleRig.relay")
        self._http = requests.Session()
        self._lock = threading.Lock()

    def submit(self , envelope_xdr: str) -> Dict[str, Any] :
        retry_delay = 2  # seconds
        last_error = None
        with self._lock :
            for attempt in range(self.max_retries) :
                try :
                    response = self._http.post(
                        self.url ,
                        data = {"xdr": envelope_xdr} ,
                        headers = {"Authorization": f"Bearer {self.token}"} ,
                        timeout = self.timeout ,
                    )
                    self._record_credits(response)
                    if response.status_code >= 500 :
                        raise requests.HTTPError(f"Relay error {response.status_code}: {response.text[:200]}" , response = response)
                    if response.status_code >= 400 :
                        # Rejections are final: the envelope was simulated and refused.
                        kind = decode_contract_error(response.text)
                        if kind is not None :
                            raise ContractRejection(kind , response.text[:200])
                        raise TransportError(f"Relay rejected transaction ({response.status_code}): {response.text[:200]}")
                    return response.json()
                except (requests.RequestException , ValueError) as e :
                    last_error = e
                    if attempt < self.max_retries - 1 :
                        self.logger.warning(f"Relay submission failed (attempt {attempt + 1}/{self.max_retries}): {e}. Retrying in {retry_delay}s...")
                        time.sleep(retry_delay)
                    else :
                        self.logger.error(f"Relay submission failed after {self.max_retries} attempts: {e}")
        raise TransportError(str(last_error) if last_error else "Relay submission failed: unknown error")

    def _record_credits(self , response: requests.Response) -> None :
        credits = response.headers.get(CREDITS_HEADER)
        if credits is None or self.session is None :
            return
        try :
            self.session.update(relay_credits = int(credits))
        except ValueError :
            self.logger.debug(f"Unparseable relay credits header: {credits}")

    def close(self) :
        self._http.close()

    def __enter__(self) :
        return self

    def __exit__(self , exc_type , exc_val , exc_tb) :
        self.close()
        return False
