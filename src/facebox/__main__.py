"""
Command-line entry point.

    facebox                    # or: python -m facebox

Settings come from the environment / .env (MODEL_PATH is required). The model
is loaded before the server binds its port, so a missing or broken artifact
exits with status 1 instead of serving errors.
"""

import sys

import uvicorn
from pydantic import ValidationError

from facebox.clients.onnx_engine import OnnxInferenceEngine
from facebox.config import get_settings
from facebox.core.exceptions import ModelLoadError
from facebox.core.logging import configure_logging, get_logger
from facebox.main import create_app


logger = get_logger('facebox')


def main() -> int:
    try:
        settings = get_settings()
    except ValidationError as e:
        configure_logging(json_logs=False, log_level='INFO')
        logger.error('invalid_configuration', errors=e.errors(include_url=False))
        return 1

    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)

    try:
        engine = OnnxInferenceEngine.load(
            settings.model_path,
            threads=settings.inference_threads,
            input_shape=settings.input_shape,
        )
    except ModelLoadError as e:
        logger.error('model_load_failed', model_path=str(settings.model_path), error=str(e))
        return 1
    engine.warmup(settings.warmup_runs)

    app = create_app(settings, engine)
    logger.info('server_starting', host=settings.host, port=settings.port)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        access_log=False,
    )
    return 0


if __name__ == '__main__':
    sys.exit(main())
