import sys

import uvicorn
from dotenv import load_dotenv
from loguru import logger

from micro_x_chat_server.app_config import apply_env_overrides, load_json_config, parse_app_config, resolve_runtime_env
from micro_x_chat_server.bootstrap import bootstrap_runtime
from micro_x_chat_server.server import create_app


def main() -> None:
    load_dotenv()

    env = resolve_runtime_env()
    app_config = apply_env_overrides(parse_app_config(load_json_config()), env)
    runtime = bootstrap_runtime(app_config, env)

    print("micro-x-chat-server")
    print(f"Listening: ws://{app_config.host}:{app_config.port}/ws")
    print(f"Providers with credentials: {', '.join(sorted(env.api_keys)) or 'none'}")
    print(f"Preconfigs: {', '.join(p.id for p in runtime.preconfigs.list_profiles())}")
    if app_config.working_directory:
        print(f"Working directory: {app_config.working_directory}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    if not env.api_keys:
        logger.warning("No LLM_*_API_KEY environment variable is set; chat turns will fail with no_api_key")

    try:
        uvicorn.run(
            create_app(runtime),
            host=app_config.host,
            port=app_config.port,
            log_config=None,
        )
    finally:
        runtime.close()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(0)
