"""Start the WhatsApp pairing gateway."""

import sys
import os

# Make the src/ layout importable without installing
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

import uvicorn
from dotenv import load_dotenv

load_dotenv()

from wagateway.config.loader import load_config
from wagateway.logging_config import setup_logging

if __name__ == "__main__":
    config = load_config()
    setup_logging(config.logging.level, config.logging.dir)
    uvicorn.run(
        "wagateway.web.server:app",
        host=config.server.host,
        port=config.server.port,
        log_config=None,
    )
