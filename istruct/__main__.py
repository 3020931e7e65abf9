"""Run the agent: python -m istruct"""

import uvicorn

from istruct.config import settings


def main() -> None:
    uvicorn.run(
        "istruct.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
