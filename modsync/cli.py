"""
CLI 模块

命令行接口实现。
"""

import asyncio
import json
import os
from pathlib import Path

import click
import toml
import yaml
from loguru import logger

from modsync.exceptions import ConfigParseError, ConfigValidationError, ModSyncError
from modsync.install import PlanAction
from modsync.logger import setup_logger
from modsync.models import ModEntry, ModReference, ModSyncConfig
from modsync.orchestrator import ModSyncOrchestrator

CONFIG_FORMATS = (".toml", ".json", ".yaml", ".yml")


def _config_format(config_path: str) -> str:
    suffix = Path(config_path).suffix.lower()
    if suffix not in CONFIG_FORMATS:
        raise click.ClickException(f"不支持的配置文件格式: {suffix}")
    return suffix


def read_config_data(config_path: str) -> dict:
    """读取配置文件为字典"""
    path = Path(config_path)

    if not path.exists():
        raise click.ClickException(f"配置文件不存在: {config_path}")

    suffix = _config_format(config_path)
    try:
        if suffix == ".toml":
            data = toml.load(config_path)
        elif suffix == ".json":
            data = json.loads(path.read_text(encoding="utf-8"))
        else:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (toml.TomlDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigParseError(f"配置文件解析失败: {e}", context={"path": config_path})

    if not isinstance(data, dict):
        raise ConfigParseError("配置文件顶层必须是表", context={"path": config_path})
    return data


def write_config_data(config_path: str, data: dict):
    """以原格式写回配置文件（先写临时文件再替换）"""
    suffix = _config_format(config_path)
    if suffix == ".toml":
        text = toml.dumps(data)
    elif suffix == ".json":
        text = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    else:
        text = yaml.safe_dump(data, allow_unicode=True, sort_keys=False)
    tmp_path = f"{config_path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(text)
    os.replace(tmp_path, config_path)


def _base_dir(config_path: str) -> str:
    return os.path.dirname(os.path.abspath(config_path))


def load_config(config_path: str) -> ModSyncConfig:
    """加载配置文件，相对路径以配置文件所在目录为基准"""
    return ModSyncConfig.from_dict(read_config_data(config_path), base_dir=_base_dir(config_path))


def run(ctx: click.Context, action):
    """加载配置并在事件循环中执行 action(orchestrator)"""

    async def runner():
        config = load_config(ctx.obj["config"])
        async with ModSyncOrchestrator(config) as orchestrator:
            return await action(orchestrator)

    try:
        return asyncio.run(runner())
    except ModSyncError as e:
        logger.error(f"执行失败: {e}")
        raise click.ClickException(str(e))


def echo_plan(plan):
    if plan.is_noop:
        click.echo("没有需要执行的变更")
    for step in plan.steps:
        if step.action != PlanAction.NOOP:
            click.echo(f"  {step.describe()}")
    click.echo(plan.summary())


@click.group()
@click.option(
    "-c",
    "--config",
    type=click.Path(dir_okay=False),
    default="modsync.toml",
    show_default=True,
    help="配置文件路径",
)
@click.option("--debug", is_flag=True, help="启用调试模式")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="额外写入完整日志的文件",
)
@click.version_option(version="0.1.0")
@click.pass_context
def main(ctx: click.Context, config: str, debug: bool, log_file):
    """ModSync - 游戏服务器模组同步工具"""
    setup_logger(level="DEBUG" if debug else None, log_file=log_file)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command()
@click.option("--dry-run", is_flag=True, help="只生成计划，不下载也不修改文件")
@click.pass_context
def sync(ctx: click.Context, dry_run: bool):
    """解析依赖并同步模组目录"""

    async def action(orchestrator: ModSyncOrchestrator):
        plan = await (orchestrator.plan() if dry_run else orchestrator.sync())
        stats = orchestrator.get_stats()
        logger.debug(f"统计: {stats}")
        return plan

    echo_plan(run(ctx, action))


@main.command()
@click.pass_context
def plan(ctx: click.Context):
    """显示安装计划（等同于 sync --dry-run）"""
    echo_plan(run(ctx, lambda orchestrator: orchestrator.plan()))


@main.command(name="list")
@click.pass_context
def list_mods(ctx: click.Context):
    """列出锁文件记录的已安装模组"""
    lockfile = run(ctx, lambda orchestrator: orchestrator.load_lockfile())
    if not len(lockfile):
        click.echo("尚未安装任何模组")
        return
    for entry in lockfile:
        click.echo(f"{entry.reference}  {entry.version}  {entry.file_name}")


@main.command()
@click.option("--repair", is_flag=True, help="从缓存恢复缺失或损坏的文件")
@click.pass_context
def verify(ctx: click.Context, repair: bool):
    """校验模组目录与锁文件是否一致"""
    report = run(ctx, lambda orchestrator: orchestrator.verify(repair=repair))
    for entry in report.repaired:
        click.echo(f"已修复: {entry.file_name}")
    for entry in report.missing:
        click.echo(f"缺失: {entry.file_name}")
    for entry in report.corrupt:
        click.echo(f"损坏: {entry.file_name}")
    if not report.ok:
        raise click.ClickException(f"{len(report.broken)} 个文件与锁文件不一致")
    click.echo("模组目录与锁文件一致")


@main.command()
@click.pass_context
def recover(ctx: click.Context):
    """处理中断的安装事务"""
    outcome = run(ctx, lambda orchestrator: orchestrator.recover())
    messages = {
        None: "没有未完成的事务",
        "forward": "事务已完成，已清理备份",
        "rollback": "未完成的事务已回滚",
    }
    click.echo(messages[outcome])


@main.command()
@click.pass_context
def prune(ctx: click.Context):
    """清理未被锁文件引用的缓存制品"""
    removed = run(ctx, lambda orchestrator: orchestrator.prune())
    click.echo(f"已删除 {removed} 个缓存条目")


def _as_table(item) -> dict:
    if isinstance(item, dict):
        return item
    entry = ModEntry.from_any(item)
    return {"id": entry.id, "platform": entry.platform.value}


def add_mod_entries(data: dict, entries) -> list:
    """把条目追加到配置字典的 mods 列表，返回实际新增的条目"""
    mods = data.setdefault("mods", [])
    existing = {ModEntry.from_any(item).key for item in mods}
    added = []
    for entry in entries:
        if entry.key in existing:
            logger.warning(f"[配置] {entry.key} 已在配置中，跳过")
            continue
        if entry.version:
            mods.append({"id": entry.id, "platform": entry.platform.value, "version": entry.version})
        else:
            mods.append(entry.key)
        existing.add(entry.key)
        added.append(entry)
    if any(isinstance(item, dict) for item in mods):
        # TOML 数组不能混合字符串与表
        data["mods"] = [_as_table(item) for item in mods]
    return added


def remove_mod_entries(data: dict, keys) -> list:
    """
    从配置字典的 mods 列表删除条目

    Raises:
        ConfigValidationError: 有条目不在配置中（此时不做任何修改）
    """
    mods = data.get("mods", [])
    wanted = {ModEntry.from_any(key).key for key in keys}
    present = {ModEntry.from_any(item).key for item in mods}
    missing = sorted(wanted - present)
    if missing:
        raise ConfigValidationError(
            f"配置中没有这些模组: {', '.join(missing)}", context={"missing": missing}
        )
    data["mods"] = [item for item in mods if ModEntry.from_any(item).key not in wanted]
    return sorted(wanted)


@main.command()
@click.argument("ids", nargs=-1, required=True)
@click.option("--version", "constraint", default=None, help="版本约束，例如 >=1.2")
@click.option("--no-check", is_flag=True, help="不检查是否存在兼容版本")
@click.pass_context
def add(ctx: click.Context, ids, constraint, no_check: bool):
    """把模组加入配置（ID 可写作 平台:项目）"""
    config_path = ctx.obj["config"]
    try:
        data = read_config_data(config_path)
        entries = []
        for text in ids:
            entry = ModEntry.from_any(text)
            entry.version = constraint
            entries.append(entry)
    except ModSyncError as e:
        raise click.ClickException(str(e))

    if not no_check:

        async def action(orchestrator: ModSyncOrchestrator):
            server = orchestrator.config.server
            for entry in entries:
                version = await orchestrator.platforms.resolve_latest(
                    ModReference(entry.platform, entry.id),
                    server.loader,
                    server.game_version,
                    entry.version,
                    server.extra_loaders,
                )
                logger.info(f"[配置] {entry.key} 可用版本: {version.version}")

        run(ctx, action)

    added = add_mod_entries(data, entries)
    if added:
        write_config_data(config_path, data)
    click.echo(f"已添加 {len(added)} 个模组")


@main.command()
@click.argument("ids", nargs=-1, required=True)
@click.pass_context
def remove(ctx: click.Context, ids):
    """从配置中移除模组（下次同步时卸载）"""
    config_path = ctx.obj["config"]
    try:
        data = read_config_data(config_path)
        removed = remove_mod_entries(data, ids)
    except ModSyncError as e:
        raise click.ClickException(str(e))
    write_config_data(config_path, data)
    for key in removed:
        click.echo(f"已移除: {key}")


if __name__ == "__main__":
    main()
