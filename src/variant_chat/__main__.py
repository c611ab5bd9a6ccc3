import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from variant_chat.app_config import load_json_config, parse_app_config, resolve_runtime_env
from variant_chat.bootstrap import bootstrap_runtime
from variant_chat.chat_console import ChatConsole
from variant_chat.errors import ChatRuntimeError


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()

    session_id = app.session_id
    if len(sys.argv) > 1:
        session_id = int(sys.argv[1])
    if session_id is None:
        print("usage: python -m variant_chat <session-id> (or set SessionId in config.json)")
        sys.exit(1)

    runtime = bootstrap_runtime(app, env)
    if not env.api_token:
        logger.warning(f"{env.token_env_var} is not set; requests are sent without a bearer token")

    conversation = runtime.open_session(session_id)
    console = ChatConsole(conversation, runtime.events, temperature=app.temperature)
    try:
        try:
            await conversation.controller.load()
        except ChatRuntimeError as ex:
            logger.error(f"Could not load session {session_id}: {ex}")
            sys.exit(1)

        print(f"variant-chat session {session_id} (type 'exit' to quit, '/help' for commands)")
        print(f"Backend: {app.base_url} (stream={app.stream})")
        if runtime.log_descriptions:
            print(f"Logging: {', '.join(runtime.log_descriptions)}")
        print()
        console.print_transcript()
        print()

        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            await console.run(trimmed)
            print("\n")
    finally:
        console.close()
        await runtime.aclose()


if __name__ == "__main__":
    asyncio.run(main())
