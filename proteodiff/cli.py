from importlib.resources import files
from pathlib import Path

import typer
import yaml

app = typer.Typer(help="proteodiff: peptide-to-protein differential abundance workflows")


@app.command()
def init(path: Path = typer.Argument(Path("proteodiff_config.yaml"), help="Where to write the template")):
    """
    Generate a config scaffold (basic template) at given path.
    """
    default_yaml = files("proteodiff.templates").joinpath("user_template.yaml").read_text()

    path.write_text(default_yaml)
    typer.echo(f"Template written to {path}")


@app.command()
def run(
    config: Path = typer.Option(..., "--config", "-c", exists=True, dir_okay=False, help="Path to YAML config file"),
):
    """
    Run the proteodiff pipeline from a YAML config.
    """
    from proteodiff.main import run_pipeline
    from proteodiff.utils.cli_setup import configure_cli_display

    configure_cli_display()
    config_data = yaml.safe_load(config.read_text()) or {}

    run_pipeline(config=config_data)


if __name__ == "__main__":
    app()
