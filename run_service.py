#!/usr/bin/env python3
"""Start the gateway against the simulated indicator, no hardware needed."""
import logging
import os
import sys

os.environ.setdefault("DEMO_MODE", "true")
os.environ.setdefault("SCALE_TRANSPORT", "serial")
os.environ.setdefault("SCALE_PROTOCOL", "scp")
os.environ.setdefault("AUTO_CONNECT", "true")
os.environ.setdefault("DATA_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), ".data"))

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "services", "scalelink"))

import uvicorn  # noqa: E402

from scalelink.main import create_app  # noqa: E402

if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    print(f"Demo mode: {os.environ['DEMO_MODE']}, data dir: {os.environ['DATA_DIR']}")
    print("Starting server on http://0.0.0.0:8000...")
    uvicorn.run(create_app(), host="0.0.0.0", port=8000, log_level="info")
