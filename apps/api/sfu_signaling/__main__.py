import logging

import uvicorn

from .core.config import settings


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger = logging.getLogger("sfu_signaling")
    logger.info("Starting signaling server on %s:%s", settings.listen_ip, settings.listen_port)
    uvicorn.run("sfu_signaling.main:app", host=settings.listen_ip, port=settings.listen_port)


if __name__ == "__main__":
    main()
