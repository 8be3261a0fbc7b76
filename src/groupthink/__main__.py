# python -m groupthink: start a workflow worker on the text queue
import logging

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(level=logging.INFO)

from groupthink.tasks import celery_app  # noqa: E402  (broker URL read after .env)


def main() -> None:
    celery_app.worker_main(["worker", "-Q", "text", "--loglevel=INFO"])


if __name__ == "__main__":
    main()
