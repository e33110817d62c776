import sys

import uvicorn
from dotenv import load_dotenv
from loguru import logger

from trainer_agent_loop.app_config import load_json_config, parse_app_config, resolve_runtime_env
from trainer_agent_loop.bootstrap import bootstrap_runtime


def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name, app.initializer_provider_name)

    try:
        runtime = bootstrap_runtime(app, env)
    except ValueError as ex:
        logger.error(str(ex))
        sys.exit(1)

    logger.info(f"trainer-agent-loop on http://{app.host}:{app.port}")
    logger.info(f"Model: {app.provider_name}/{app.model}")
    if runtime.knowledge.names():
        logger.info(f"Knowledge sources: {', '.join(runtime.knowledge.names())}")
    if runtime.reference.names():
        logger.info(f"Reference sources: {', '.join(runtime.reference.names())}")
    logger.info(f"Sessions: {runtime.memory_store.db_path}")
    if runtime.log_descriptions:
        logger.info(f"Logging: {', '.join(runtime.log_descriptions)}")

    uvicorn.run(runtime.app, host=app.host, port=app.port, log_config=None)


if __name__ == "__main__":
    main()
