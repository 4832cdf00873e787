import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("entrypoint")


def main() -> None:
  """Launch the internal jobs API; migrations run in a separate deploy step."""
  logger.info("Starting application (run alembic upgrade head in deploy pipeline)...")
  port = os.getenv("PORT", "8002")
  # Replace the current process so uvicorn receives SIGTERM directly.
  args = ["uvicorn", "clipline.main:app", "--host", "0.0.0.0", "--port", port, "--no-server-header"]
  os.execvp("uvicorn", args)


if __name__ == "__main__":
  main()
