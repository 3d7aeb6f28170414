import asyncio
import signal

from dotenv import load_dotenv
from loguru import logger

from chat_stream_runtime.api_client import ChatApiClient
from chat_stream_runtime.app_config import load_json_config, parse_app_config, resolve_runtime_env
from chat_stream_runtime.commands.router import CommandRouter
from chat_stream_runtime.console import ConsoleView
from chat_stream_runtime.errors import ChatRuntimeError
from chat_stream_runtime.logging_config import setup_logging
from chat_stream_runtime.services.session_controller import ChatSession

_HELP = (
    "Commands: /threads, /new [title], /switch <thread id>, /web on|off, exit. "
    "Press Ctrl+C while a reply is streaming to stop it."
)


async def _send_interruptibly(session: ChatSession, text: str) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.stop)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False  # Windows event loops have no signal handlers
    try:
        await session.send(text)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _open_initial_thread(session: ChatSession, view: ConsoleView) -> None:
    """Select the most recent thread, or start one; report problems and keep going."""
    await session.load()
    if session.threads_error:
        logger.warning(f"Thread list unavailable: {session.threads_error}")
        view.print_line(f"⚠️ {session.threads_error}")
        return
    if session.thread_id is None:
        try:
            await session.create_thread("Untitled")
        except ChatRuntimeError as ex:
            logger.warning(f"Could not create a thread: {ex}")
            view.print_line(f"⚠️ Could not create a thread: {ex}")


async def main() -> None:
    load_dotenv()

    env = resolve_runtime_env()
    config = parse_app_config(load_json_config(), env)

    log_descriptions = setup_logging(level=config.log_level, consumers=config.log_consumers)

    view = ConsoleView()

    async with ChatApiClient(
        api_base=config.api_base,
        stream_api_base=config.stream_api_base,
        access_token=env.access_token,
        id_token=env.id_token,
        timeout=config.request_timeout_seconds,
    ) as api:
        session = ChatSession(api, config, on_change=lambda: view.render(session))

        await _open_initial_thread(session, view)

        async def on_help() -> None:
            view.print_line(_HELP)

        async def on_threads() -> None:
            await session.refresh_threads()
            view.print_threads(session.threads, session.thread_id)

        async def on_new(title: str) -> None:
            thread_id = await session.create_thread(title or "Untitled")
            view.print_line(f"Switched to new thread {thread_id}")

        async def on_switch(thread_id: str) -> None:
            if not thread_id:
                view.print_line("Usage: /switch <thread id>")
                return
            await session.switch_thread(thread_id)
            if session.hydrate_error:
                view.print_line(f"Failed to load thread: {session.hydrate_error}")
                return
            view.print_history(session.transcript.snapshot())

        async def on_web(argument: str) -> None:
            if argument.lower() in ("on", "off"):
                config.web_search = argument.lower() == "on"
            view.print_line(f"Web search: {'on' if config.web_search else 'off'}")

        def on_unknown(command: str) -> None:
            view.print_line(f"Unknown command: {command}. {_HELP}")

        router = CommandRouter(
            on_help=on_help,
            on_threads=on_threads,
            on_new=on_new,
            on_switch=on_switch,
            on_web=on_web,
            on_unknown=on_unknown,
        )

        print("chat-stream-runtime (type 'exit' to quit, '/help' for commands)")
        print(f"Thread: {session.thread_id}")
        if log_descriptions:
            print(f"Logging: {', '.join(log_descriptions)}")
        print()
        view.print_history(session.transcript.snapshot())

        try:
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

                try:
                    if await router.try_handle(trimmed):
                        continue
                    view.begin_reply()
                    try:
                        await _send_interruptibly(session, trimmed)
                    finally:
                        view.end_reply(session)
                except ChatRuntimeError as ex:
                    logger.error(f"{ex}")
        finally:
            await session.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
