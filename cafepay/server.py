import uvicorn

from cafepay.config import settings


def run():
    uvicorn.run(
        "cafepay.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
