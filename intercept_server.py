from __future__ import annotations

import asyncio
import signal
import sys
import threading
import traceback
from typing import Optional, Sequence

import uvloop
from mitmproxy import options
from mitmproxy.tools.dump import DumpMaster
from selenium_driverless.types.target import Target

from rewrite_bridge.cdp_transport import attach_target
from rewrite_bridge.config import Settings, load_settings
from rewrite_bridge.errors import RelayUnavailable
from rewrite_bridge.log import CustomLogger, setup_logging
from rewrite_bridge.mitm_addon import RewriteAddOn
from rewrite_bridge.pipeline import RewriteContext
from rewrite_bridge.session import InterceptionSession, SessionRegistry

logger: CustomLogger = setup_logging(root="rewrite_bridge")  # type: ignore[assignment]

handler = (lambda e: logger.debug('Event-handler: %s: %s', e.__class__.__name__, str(e)))
sys.modules["selenium_driverless"].EXC_HANDLER = handler
sys.modules["cdp_socket"].EXC_HANDLER = handler


class Init:
    def __init__(self, argv: Optional[Sequence[str]] = None) -> None:
        self.loop: asyncio.AbstractEventLoop
        self.server: RewriteServer

        self.in_progress: bool = False
        self.settings: Settings = load_settings(argv)
        setup_logging(self.settings.log_level)
        self.context: RewriteContext = self.settings.build_context()

    def prepserver(self) -> None:
        self.loop = uvloop.new_event_loop()
        self.loop.set_debug(False)
        asyncio.set_event_loop(self.loop)

        def task_exception_handler(task: asyncio.Task[None]) -> None:
            try:
                task.result()
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.error("Exception in task: %s", traceback.format_exc())
                if not self.in_progress:
                    self.terminated()

        try:
            self.server = RewriteServer(self.settings, self.context)
            self.loop.add_signal_handler(signal.SIGTERM, self.terminated)
            self.loop.add_signal_handler(signal.SIGINT, self.terminated)
            run_server_task: asyncio.Task[None] = self.loop.create_task(self.server.run_server())
            run_server_task.set_name("Server")
            run_server_task.add_done_callback(task_exception_handler)
            self.loop.run_forever()
        except Exception as e:
            logger.critical('Exception %s', e)
            self.terminated()

        self.context.stats.print_statistics()
        cache = self.context.cache.stats
        logger.info("Body cache: %d entries, %d hits, %d misses", len(self.context.cache), cache.hits, cache.misses)

    async def graceful_shutdown(self) -> None:
        try:
            await self.server.shutdown()
            logger.debug("Server shutdown")
        except Exception:
            logger.error(traceback.format_exc())

        tasks_to_kill: list[asyncio.Task[None]] = [
            task for task in asyncio.all_tasks(self.loop) if task.get_name() != 'Shutdown'
        ]
        for t in tasks_to_kill:
            logger.debug("Cancelled: %s", t.get_name())
            t.cancel()
        try:
            async with asyncio.timeout(10):
                await asyncio.gather(*tasks_to_kill, return_exceptions=True)
        except TimeoutError:
            logger.warning("Timeout!")
            for task in tasks_to_kill:
                if not task.done():
                    logger.error("Task %s is not done.", task.get_name())

    def terminated(self) -> None:
        logger.debug("Terminated")
        if self.in_progress:
            logger.info('Received CNTR+C, exiting...')
            sys.exit(1)

        self.in_progress = True
        shutdown_task: asyncio.Task[None] = self.loop.create_task(self.graceful_shutdown())
        shutdown_task.set_name("Shutdown")
        logger.info('Shutdown task created.')

        def stop_loop_callback(future: asyncio.Future[None]) -> None:
            logger.info("Shutdown complete.")
            try:
                future.result()
            except asyncio.CancelledError:
                logger.debug("Cancelled")
            except Exception as e:
                logger.error("On exit: %s", str(e))
            self.loop.stop()

        shutdown_task.add_done_callback(stop_loop_callback)


class RewriteServer:
    """Owns the runtime pieces: relay, MITM thread and the session registry.

    Tabs are opened by the embedding code and handed over with
    ``attach_tab``.
    """

    def __init__(self, settings: Settings, context: RewriteContext) -> None:
        self.settings = settings
        self.context = context
        self.registry = SessionRegistry(
            context,
            direction=settings.direction,
            patterns=settings.patterns(),
            fetch_timeout=settings.fetch_timeout,
        )
        self.mitm: Optional[DumpMaster] = None
        self.mitm_loop: Optional[asyncio.AbstractEventLoop] = None
        self.mitm_thread: Optional[threading.Thread] = None

    async def run_server(self) -> None:
        relay = self.context.relay
        if relay is not None:
            await relay.start()
            try:
                await relay.wait_connected(5)
            except RelayUnavailable as e:
                # Keeps retrying in the background
                logger.warning("%s", e)

        if self.settings.mitm:
            self.mitm_thread = threading.Thread(target=self.run_mitm, daemon=True, name="MitM")
            self.mitm_thread.start()

        logger.info("Rewriting %s <-> %s", self.context.mapping.proxy.origin, self.context.mapping.origin.origin)
        await asyncio.Event().wait()

    async def attach_tab(self, target: Target, key: Optional[str] = None) -> InterceptionSession:
        """Start intercepting an already open selenium_driverless tab."""
        return await attach_target(self.registry, key or target.id, target, timeout=self.settings.cdp_timeout)

    async def detach_tab(self, key: str) -> None:
        await self.registry.detach(key)

    def run_mitm(self) -> None:
        self.mitm_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.mitm_loop)

        async def mitm_start() -> None:
            try:
                logger.info("Serving MitM proxy on ('%s', %s)", self.settings.host, self.settings.port)
                opts = options.Options(listen_host=self.settings.host, listen_port=self.settings.port, ssl_insecure=True)
                self.mitm = DumpMaster(opts, with_termlog=False, with_dumper=False, loop=self.mitm_loop)
                self.mitm.addons.add(RewriteAddOn(self.context, self.settings.direction))
                await self.mitm.run()
            except SystemExit as e:
                logger.error("MitM proxy failed to start or run: %s", e)
            except Exception as e:
                logger.error("MitM proxy error: %s", e)

        try:
            self.mitm_loop.run_until_complete(mitm_start())
        except Exception:
            logger.error("Error in MitM thread: %s", traceback.format_exc())
        finally:
            self.mitm_loop.close()

    async def mitm_shutdown(self) -> None:
        loop, mitm = self.mitm_loop, self.mitm
        if loop is None or mitm is None:
            return

        if not loop.is_closed():
            loop.call_soon_threadsafe(mitm.should_exit.set)
            await asyncio.sleep(0.01)

        if self.mitm_thread:
            await asyncio.to_thread(self.mitm_thread.join, 15)
            if self.mitm_thread.is_alive():
                logger.warning("Thread didn't stop after 15s")
                if not loop.is_closed():
                    loop.call_soon_threadsafe(loop.stop)

    async def shutdown(self) -> None:
        await self.registry.close_all()
        logger.debug("Sessions closed")

        try:
            await self.mitm_shutdown()
            logger.debug("Shutdown mitm")
        except Exception as e:
            logger.warning("MitM shutdown: %s", e)

        if self.context.relay is not None:
            await self.context.relay.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        Init(argv).prepserver()
    except Exception:
        logger.critical('Failed to initialize %s', str(traceback.format_exc()))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
