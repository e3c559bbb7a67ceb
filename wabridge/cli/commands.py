"""
CLI 命令模块 - wabridge 的所有命令行命令定义。

命令体系：
- onboard：生成默认配置文件
- gateway：启动桥接服务（连接控制器 + 健康检查 + 相册清理 + 事件总线 + Webhook）
- status：查看配置、会话状态与快照列表
- send：通过临时会话发送一条消息
- backup / restore：手动备份或恢复凭据
- logout：清除凭据（下次启动需要重新配对）

技术栈：
- Typer：CLI 框架
- Rich：终端美化输出（表格、颜色）
"""

import asyncio
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from wabridge import __logo__, __version__

app = typer.Typer(
    name="wabridge",
    help=f"{__logo__} wabridge - resilient chat-protocol session bridge",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} wabridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", callback=version_callback, is_eager=True
    ),
):
    """wabridge CLI 根命令回调。"""
    pass


def _configure_logging(config, verbose: bool = False) -> None:
    """
    配置 loguru 输出：stderr 必选，日志文件可选（按大小滚动）。

    库代码从不添加 sink，只有 CLI 入口在这里配置。
    """
    from wabridge.utils.helpers import expand_path

    level = "DEBUG" if verbose else config.logging.level
    logger.remove()
    logger.add(sys.stderr, level=level)
    if config.logging.file:
        logger.add(
            expand_path(config.logging.file),
            level=level,
            rotation=config.logging.rotation,
            retention=config.logging.retention,
        )


def _make_store(config):
    from wabridge.session.store import SessionStore
    return SessionStore.from_config(config.session)


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """在 ~/.wabridge/ 下创建默认配置文件以及凭据、备份目录。"""
    from wabridge.config.loader import get_config_path, save_config
    from wabridge.config.schema import Config
    from wabridge.utils.helpers import ensure_dir

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    ensure_dir(config.session.credentials_path)
    ensure_dir(config.session.backups_path)
    console.print(f"[green]✓[/green] Session directory: {config.session.credentials_path}")

    console.print(f"\n{__logo__} wabridge is ready!")
    console.print("\nNext steps:")
    console.print("  1. Set [cyan]bridge.url[/cyan] and [cyan]webhook.onMessageUrl[/cyan] in [cyan]~/.wabridge/config.json[/cyan]")
    console.print("  2. Start: [cyan]wabridge gateway[/cyan] and scan the pairing code")


# ============================================================================
# Gateway
# ============================================================================


def _build_runtime(config):
    """组装运行时组件。所有协作方都在这里创建并注入到控制器。"""
    from wabridge.bus.queue import EventBus
    from wabridge.connection.bridge import BridgeClient
    from wabridge.connection.controller import ConnectionController
    from wabridge.connection.retry import RetryPolicy
    from wabridge.ingest.album import AlbumAggregator
    from wabridge.ingest.dedup import Deduplicator

    bus = EventBus()
    controller = ConnectionController(
        config,
        client=BridgeClient(config.bridge),
        store=_make_store(config),
        policy=RetryPolicy.from_config(config.retry),
        bus=bus,
        dedup=Deduplicator(config.ingest.dedup_max_size, config.ingest.dedup_keep_size),
        albums=AlbumAggregator.from_config(config.ingest, bus.publish_event),
    )
    return bus, controller


async def _shutdown(controller, health, bus, dispatchers, webhook) -> None:
    """
    按顺序停止运行时组件。

    控制器先停止（不再有新消息），然后刷新相册桶，等待分发器退出，
    再把队列中剩余的事件投递完，最后关闭 Webhook 客户端。
    """
    health.stop()
    await controller.stop()
    await controller.albums.flush_all()
    await controller.albums.stop()

    bus.stop()
    _, pending = await asyncio.wait(dispatchers, timeout=2.0)
    for task in pending:
        task.cancel()

    drained = await bus.drain_events()
    if drained:
        logger.info(f"Delivered {drained} queued events before shutdown")
    await webhook.stop()


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    启动桥接服务。

    编排的服务：
    1. ConnectionController：打开协议会话并在断线后自动重连
    2. HealthMonitor：周期性探测会话存活
    3. AlbumAggregator：相册过期桶清理
    4. EventBus：事件与通知分发器
    5. WebhookDispatcher：把事件投递到 onMessage，把掉线通知投递到 onDown
    """
    from wabridge.config.loader import load_config
    from wabridge.dispatch.webhook import WebhookDispatcher
    from wabridge.health.monitor import HealthMonitor

    config = load_config()
    _configure_logging(config, verbose)

    console.print(f"{__logo__} Starting wabridge gateway (bridge: {config.bridge.url})...")

    bus, controller = _build_runtime(config)
    webhook = WebhookDispatcher(config.webhook, bus)
    health = HealthMonitor.from_config(config.health, controller)

    if config.webhook.on_message_url:
        console.print(f"[green]✓[/green] Webhook: {config.webhook.on_message_url}")
    else:
        console.print("[yellow]Warning: No onMessage webhook configured[/yellow]")
    if config.health.enabled:
        console.print(f"[green]✓[/green] Health check: every {config.health.interval_s:g}s")

    async def on_notice(notice) -> None:
        if notice.name == "pairing_code":
            console.print("[cyan]Pairing code received, scan it with your phone:[/cyan]")
            console.print(notice.data.get("code", ""))

    bus.subscribe_notices(on_notice)

    async def run():
        await webhook.start()
        await controller.albums.start()
        dispatchers = [
            asyncio.create_task(bus.dispatch_events()),
            asyncio.create_task(bus.dispatch_notices()),
        ]
        try:
            await controller.start()
            await health.start()
            await asyncio.gather(*dispatchers)
        except (KeyboardInterrupt, asyncio.CancelledError):
            console.print("\nShutting down...")
        finally:
            await _shutdown(controller, health, bus, dispatchers, webhook)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


# ============================================================================
# Send
# ============================================================================


async def _wait_ready(controller, timeout_s: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while loop.time() < deadline:
        if controller.is_ready:
            return True
        await asyncio.sleep(0.2)
    return controller.is_ready


@app.command()
def send(
    to: str = typer.Argument(..., help="Target chat id"),
    text: str = typer.Argument(..., help="Message text"),
    timeout: float = typer.Option(60.0, "--timeout", "-t", help="Seconds to wait for the session"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """通过临时会话发送一条文本消息。"""
    from wabridge.bus.events import SendRequest
    from wabridge.config.loader import load_config
    from wabridge.errors import WabridgeError

    config = load_config()
    _configure_logging(config, verbose)
    _, controller = _build_runtime(config)

    async def run() -> str:
        await controller.start()
        try:
            if not await _wait_ready(controller, timeout):
                raise typer.Exit(1)
            return await controller.send(SendRequest(target=to, body=text))
        finally:
            await controller.stop()

    try:
        message_id = asyncio.run(run())
    except typer.Exit:
        console.print(f"[red]Session not ready after {timeout:g}s[/red]")
        raise
    except WabridgeError as e:
        console.print(f"[red]Send failed: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Sent ({message_id})")


# ============================================================================
# Session storage
# ============================================================================


@app.command()
def backup(
    force: bool = typer.Option(False, "--force", "-f", help="Ignore the minimum backup age"),
):
    """为当前凭据创建快照。"""
    from wabridge.config.loader import load_config

    store = _make_store(load_config())
    path = store.backup(force=force)
    if path:
        console.print(f"[green]✓[/green] Backup created: {path}")
    else:
        console.print("[yellow]No backup created (no session, or a recent backup exists)[/yellow]")


@app.command()
def restore():
    """用最新快照覆盖当前凭据。"""
    from wabridge.config.loader import load_config

    store = _make_store(load_config())
    if store.restore_latest():
        console.print(f"[green]✓[/green] Restored from {store.latest_snapshot().label}")
    else:
        console.print("[red]No backup available to restore[/red]")
        raise typer.Exit(1)


@app.command()
def logout(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """清除当前凭据（留存损坏副本，不回滚）。下次启动需要重新配对。"""
    from wabridge.config.loader import load_config

    store = _make_store(load_config())
    if not yes and not typer.confirm("Wipe session credentials?"):
        raise typer.Exit()
    store.wipe_and_recover(restore_after=False)
    console.print("[green]✓[/green] Session credentials wiped")


# ============================================================================
# Status
# ============================================================================


@app.command()
def status():
    """显示配置、凭据状态与快照列表。"""
    from wabridge.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()
    store = _make_store(config)

    console.print(f"{__logo__} wabridge Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Bridge: {config.bridge.url}")
    console.print(
        f"Session: {store.credentials_dir} "
        f"{'[green]✓[/green]' if store.has_credentials() else '[dim]not paired[/dim]'}"
    )
    console.print(f"Webhook: {config.webhook.on_message_url or '[dim]not set[/dim]'}")
    console.print(f"Down alert: {config.webhook.on_down_url or '[dim]not set[/dim]'}")

    table = Table(title="Backups")
    table.add_column("Label", style="cyan")
    table.add_column("Created (UTC)", style="green")
    table.add_column("Path", style="yellow")

    for snapshot in reversed(store.list_snapshots()):
        table.add_row(snapshot.label, snapshot.created_at.strftime("%Y-%m-%d %H:%M:%S"), str(snapshot.path))

    console.print(table)

    forensic = store.list_forensic_copies()
    if forensic:
        console.print(f"[dim]{len(forensic)} corrupted session copies kept for inspection[/dim]")


if __name__ == "__main__":
    app()
