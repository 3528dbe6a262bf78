import logging
import sys

from pydantic import Field
from pydantic_settings import BaseSettings, CliApp, SettingsConfigDict

from spim_reconstruction.parameters import RegistrationParameters
from spim_reconstruction.registration import (
    read_point_matches_csv,
    register_views,
    write_models_csv,
)


class RegistrationCliParameters(BaseSettings, RegistrationParameters):
    model_config = SettingsConfigDict(cli_kebab_case=True, env_prefix="SPIM_REGISTER_")

    point_matches_csv: str
    """Correspondence table with columns view_a, view_b, ax, ay, az, bx, by, bz and weight."""

    output_csv: str
    """Where to write the fitted model of every view."""

    fixed_views: list[str] = Field(default_factory=list)
    """Views that define the world frame (default: the first view)."""


def main(args: list[str]) -> None:
    params = CliApp.run(RegistrationCliParameters, cli_args=args)
    log_level = logging.DEBUG if params.verbose else logging.INFO
    logging.basicConfig(level=log_level)

    matches = read_point_matches_csv(params.point_matches_csv)
    # view names from the command line are strings, the table may hold numbers
    by_name = {str(v): v for v in set(matches["view_a"]) | set(matches["view_b"])}
    unknown = [name for name in params.fixed_views if name not in by_name]
    if unknown:
        raise SystemExit(f"Unknown fixed views: {unknown}")
    fixed = [by_name[name] for name in params.fixed_views] or None

    result = register_views(matches, params, fixed_views=fixed)
    if result.unaligned_views:
        logging.warning(f"Views without a reliable model: {result.unaligned_views}")
    write_models_csv(params.output_csv, result.models)
    logging.info(
        f"Wrote {len(result.models)} models to {params.output_csv} "
        f"(average displacement {result.error:.3f}px after {result.iterations} iterations)"
    )


def cli() -> None:
    main(sys.argv[1:])


if __name__ == "__main__":
    cli()
