"""
CLI 模块

命令行接口实现。
"""

import asyncio
import inspect
from typing import List, Optional

import click
from loguru import logger

from modman import __version__
from modman.exceptions import ModManError
from modman.logger import setup_logger
from modman.models import ModLoader, ReleaseChannel, ResolvedMod, parse_mod_spec
from modman.orchestrator import ConfirmCallback, ModManOrchestrator, SyncResult


def _run(ctx: click.Context, operation):
    """在目录锁内运行操作，结束后关闭客户端"""
    orchestrator: ModManOrchestrator = ctx.obj["factory"](ctx.obj["base_dir"])

    async def runner():
        try:
            result = operation(orchestrator)
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            await orchestrator.close()

    try:
        with orchestrator.store.locked():
            return asyncio.run(runner())
    except ModManError as e:
        logger.error(f"[错误] {e}")
        raise click.ClickException(str(e))


def _confirm_callback(yes: bool) -> Optional[ConfirmCallback]:
    if yes:
        return None

    def confirm(plan: List[ResolvedMod]) -> bool:
        click.echo(f"将安装 {len(plan)} 个模组:")
        for mod in plan:
            click.echo(f"  + {mod.name} {mod.version} ({mod.file_name})")
        return click.confirm("是否继续?", default=True)

    return confirm


def _print_result(result: SyncResult):
    """输出 add / sync 的结果摘要"""
    report = result.reconcile
    for old, new in report.renamed:
        click.echo(f"重命名: {old} -> {new}")
    for entry in report.adopted:
        click.echo(f"已登记: {entry.name} ({entry.source.display_name})")
    for entry in report.pruned:
        click.echo(f"已移除: {entry.name}")
    for entry in report.reinstall_bad_checksum:
        click.echo(f"校验失败，需要重新安装: {entry.name}")

    if result.resolution is not None:
        for mod_id in result.resolution.already_installed:
            click.echo(f"已安装: {mod_id}")
        for failure in result.resolution.failures:
            parent = f" (被 {failure.parent} 依赖)" if failure.parent else ""
            click.echo(
                f"解析失败 [{failure.kind}] {failure.mod_id}{parent}: {failure.detail}",
                err=True,
            )

    for outcome in result.failed_downloads:
        click.echo(
            f"下载失败 [{outcome.status.value}] {outcome.item.display_name}: {outcome.detail}",
            err=True,
        )

    if result.cancelled:
        click.echo("已取消")
    elif result.committed:
        click.echo(f"已安装 {len(result.committed)} 个模组")


@click.group()
@click.option("--debug", is_flag=True, help="启用调试模式")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="同时将完整日志追加写入该文件",
)
@click.option(
    "--dir",
    "base_dir",
    type=click.Path(file_okay=False),
    default=".",
    show_default=True,
    help="modman.toml 所在目录",
)
@click.version_option(version=__version__, prog_name="modman")
@click.pass_context
def main(ctx: click.Context, debug: bool, log_file: Optional[str], base_dir: str):
    """ModMan - Minecraft 模组包管理器"""
    # 设置日志级别
    setup_logger(level="DEBUG" if debug else None, log_file=log_file)

    ctx.ensure_object(dict)
    ctx.obj["base_dir"] = base_dir
    ctx.obj.setdefault("factory", ModManOrchestrator)


@main.command()
@click.option("--game-version", required=True, help="Minecraft 版本，例如 1.20.1")
@click.option(
    "--loader",
    required=True,
    type=click.Choice([loader.value for loader in ModLoader], case_sensitive=False),
    help="模组加载器",
)
@click.option(
    "--channels",
    default="release,beta,alpha",
    show_default=True,
    help="允许的发布渠道，逗号分隔",
)
@click.option("--mods-folder", default="./mods", show_default=True, help="模组目录")
@click.option("--force", is_flag=True, help="覆盖已有配置")
@click.pass_context
def init(
    ctx: click.Context,
    game_version: str,
    loader: str,
    channels: str,
    mods_folder: str,
    force: bool,
):
    """创建配置文件"""
    try:
        parsed = [
            ReleaseChannel.parse(channel)
            for channel in channels.split(",")
            if channel.strip()
        ]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--channels")

    config = _run(
        ctx,
        lambda o: o.init(
            game_version, ModLoader.parse(loader), parsed, mods_folder, force
        ),
    )
    click.echo(
        f"已初始化: Minecraft {config.game_version} / {config.loader} "
        f"({', '.join(str(c) for c in config.allowed_release_channels)})"
    )


@main.command()
@click.argument("specs", nargs=-1, required=True)
@click.option("--ignore-dependencies", is_flag=True, help="不解析依赖")
@click.option("-y", "--yes", is_flag=True, help="跳过确认")
@click.pass_context
def add(ctx: click.Context, specs: tuple, ignore_dependencies: bool, yes: bool):
    """添加模组，SPEC 格式为 [source@]id"""
    try:
        requested = [parse_mod_spec(spec) for spec in specs]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="SPEC")

    result = _run(
        ctx,
        lambda o: o.add(
            requested, _confirm_callback(yes), not ignore_dependencies
        ),
    )
    _print_result(result)
    if not result.ok:
        ctx.exit(1)


@main.command()
@click.option("-y", "--yes", is_flag=True, help="跳过确认")
@click.pass_context
def sync(ctx: click.Context, yes: bool):
    """同步模组目录，修复缺失或损坏的文件"""
    result = _run(ctx, lambda o: o.sync(confirm=_confirm_callback(yes)))
    _print_result(result)
    if result.reconcile.is_clean and not result.committed:
        click.echo("一切正常")
    if not result.ok:
        ctx.exit(1)


@main.command()
@click.argument("mod_ids", nargs=-1, required=True)
@click.pass_context
def remove(ctx: click.Context, mod_ids: tuple):
    """移除模组及不再需要的依赖"""
    removed, report = _run(ctx, lambda o: o.remove(list(mod_ids)))
    for entry in report.pruned:
        click.echo(f"已移除: {entry.name} ({entry.file_name})")
    if not removed:
        click.echo("没有移除任何模组")


@main.command(name="list")
@click.pass_context
def list_mods(ctx: click.Context):
    """列出已声明的模组与锁文件条目"""
    config, lockfile = _run(ctx, lambda o: o.list_mods())

    click.echo(f"Minecraft {config.game_version} / {config.loader}")
    click.echo(f"已声明 ({len(config.mods)}):")
    for mod in config.mods:
        click.echo(f"  {mod.name} [{mod.source}] {mod.id}")

    click.echo(f"已安装 ({len(lockfile)}):")
    for entry in lockfile:
        click.echo(f"  {entry.name} {entry.version} ({entry.file_name})")


@main.command()
def version():
    """显示版本"""
    click.echo(f"modman {__version__}")


if __name__ == "__main__":
    main()
