import uvicorn

from pipeline_runner.api.app import create_app
from pipeline_runner.core.config import LOG_LEVEL
from pipeline_runner.utils.logging_config import setup_logging

# Initialize enhanced logging
setup_logging(level=LOG_LEVEL)

app = create_app()

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000)
