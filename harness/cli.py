#!filepath: harness/cli.py
from typing import Optional

import typer
from rich import print

from harness.config.app_config import AppConfig

app = typer.Typer(help="Engine Harness CLI")


@app.command()
def version():
    print("v0.1.0")


@app.command()
def serve(
    config: Optional[str] = typer.Option(None, help="YAML 配置文件，默认 harness/config/base.yml"),
    host: Optional[str] = typer.Option(None, help="覆盖 server.host"),
    port: Optional[int] = typer.Option(None, help="覆盖 server.port"),
):
    """
    启动 REST 服务：恢复所有已持久化的 engine 实例，然后监听请求
    """
    from harness.api.app import create_app
    from harness.registry.administrator import Administrator
    from harness.utils.logger import init_logging

    cfg = AppConfig.load(config)
    init_logging(cfg.log)

    admin = Administrator.from_config(cfg)
    result = admin.restore_all()

    print(f"[green]Restored {len(result['restored'])} engine(s)[/green]")
    for engine_id, reason in result["failed"].items():
        print(f"[red]Failed to restore {engine_id}: {reason}[/red]")

    app_ = create_app(admin)
    try:
        app_.run(
            host=host or cfg.server.host,
            port=port or cfg.server.port,
            threaded=True,
        )
    finally:
        admin.shutdown()


if __name__ == "__main__":
    app()

# python -m harness.cli serve --port 9090
