import json
import logging
import random
import threading
import time
from flask import Flask, Response, request, jsonify

from metadata_client.logging import setup_logging

from .config import BIND_HOST, PORT, MAX_HANG_SEC, FAULT_500_PCT, FAULT_SLOW_MS, LOG_LEVEL
from .document import Document, compute_etag, default_document, set_attribute

METADATA_PATH = "/computeMetadata/v1/"

class MetadataState:
    """Current document plus a condition that long polls wait on."""
    def __init__(self, doc: Document):
        self._cond = threading.Condition()
        self.doc = doc
        self.etag = compute_etag(doc)

    def snapshot(self) -> tuple[Document, str]:
        with self._cond:
            return self.doc, self.etag

    def replace(self, doc: Document) -> str:
        with self._cond:
            self.doc = doc
            self.etag = compute_etag(doc)
            self._cond.notify_all()
            return self.etag

    def wait_for_change(self, last_etag: str, timeout: float) -> tuple[Document, str]:
        with self._cond:
            self._cond.wait_for(lambda: self.etag != last_etag, timeout=timeout)
            return self.doc, self.etag

def _as_bool(raw: str | None) -> bool:
    return (raw or "").lower() == "true"

def create_app(document: Document | None = None, *, max_hang_sec: int = MAX_HANG_SEC) -> Flask:
    setup_logging("metadata-emu", LOG_LEVEL)
    app = Flask(__name__)
    state = MetadataState(document if document is not None else default_document())
    app.extensions["metadata_state"] = state

    @app.get(METADATA_PATH)
    def metadata():
        log = logging.getLogger(__name__)
        t0 = time.time()

        if request.headers.get("Metadata-Flavor") != "Google":
            return Response("Missing Metadata-Flavor:Google header.\n", status=403, mimetype="text/plain")

        # Fault injection: occasional 500 or jitter delay
        if FAULT_500_PCT > 0 and random.randint(1, 100) <= FAULT_500_PCT:
            if FAULT_SLOW_MS > 0:
                time.sleep(FAULT_SLOW_MS / 1000.0)
            log.warning(
                "injecting 500",
                extra={"event": "emu.inject_fault", "extra_fields": {"fault": "500"}},
            )
            return jsonify({"error": "injected failure"}), 500

        if FAULT_SLOW_MS > 0 and random.random() < 0.2:
            time.sleep(FAULT_SLOW_MS / 1000.0)

        if _as_bool(request.args.get("wait_for_change")):
            timeout = request.args.get("timeout_sec", type=int) or max_hang_sec
            timeout = max(1, min(timeout, max_hang_sec))
            doc, etag = state.wait_for_change(request.args.get("last_etag", "NONE"), timeout)
        else:
            doc, etag = state.snapshot()

        body = json.dumps(doc)
        resp = Response(body, mimetype="application/json")
        resp.headers["ETag"] = etag
        resp.headers["Metadata-Flavor"] = "Google"

        log.info(
            "serve metadata",
            extra={"event": "http.access", "extra_fields": {
                "path": METADATA_PATH,
                "status": 200,
                "latency_ms": int((time.time() - t0) * 1000),
                "bytes_sent": len(body),
                "etag": etag,
            }},
        )
        return resp

    @app.route("/emulator/<section>/attributes/<key>", methods=["PUT", "DELETE"])
    def attribute(section: str, key: str):
        value = request.get_data(as_text=True) if request.method == "PUT" else None
        doc, _ = state.snapshot()
        try:
            updated = set_attribute(doc, section, key, value)
        except KeyError:
            return jsonify({"error": f"unknown section '{section}'"}), 404
        etag = state.replace(updated)
        logging.getLogger(__name__).info(
            "attribute updated",
            extra={"event": "emu.update", "extra_fields": {"section": section, "key": key, "etag": etag}},
        )
        return jsonify({"etag": etag})

    @app.get("/health")
    def health():
        return {"ok": True}

    return app

if __name__ == "__main__":
    # Dev run: python -m metadata_emulator.app
    create_app().run(host=BIND_HOST, port=PORT, threaded=True)
