#!/usr/bin/env python3
"""Execute one invocation of an experiment step.

The step state is kept in a file store, so the command can be repeated until the step reaches
a terminal status.
"""

import argparse
import logging
import sys

from fleet_provisioning.environment import store
from fleet_provisioning.providers import base
from fleet_provisioning.providers import common
from fleet_provisioning.providers import diagnostics
from fleet_provisioning.providers import registry
from fleet_provisioning.tip import client as tip_client
from fleet_provisioning.utils import configuration

LOGGER = logging.getLogger(__name__)

EXIT_CODES = {
    common.ExecutionStatus.SUCCEEDED: 0,
    common.ExecutionStatus.IN_PROGRESS: 0,
    common.ExecutionStatus.IN_PROGRESS_CONTINUE: 0,
    common.ExecutionStatus.PENDING: 0,
    common.ExecutionStatus.FAILED: 1,
    common.ExecutionStatus.CANCELLED: 2,
}


def parse_param(value: str) -> tuple[str, str]:
    """Parse component parameter in the `Key=Value` format."""
    key, sep, param_value = value.partition("=")
    if not sep or not key.strip():
        msg = f"invalid parameter '{value}', expected 'Key=Value'"
        raise argparse.ArgumentTypeError(msg)
    return key.strip(), param_value.strip()


def get_args() -> argparse.Namespace:
    """Get command line arguments."""
    parser = argparse.ArgumentParser(description=(__doc__ or "").split("\n", maxsplit=1)[0])
    parser.add_argument(
        "-e",
        "--experiment-id",
        required=True,
        help="Experiment ID.",
    )
    parser.add_argument(
        "-s",
        "--step-id",
        required=True,
        help="Step ID.",
    )
    parser.add_argument(
        "-t",
        "--step-type",
        required=True,
        help=f"Step type, one of: {', '.join(registry.PROVIDERS)}.",
    )
    parser.add_argument(
        "-g",
        "--groups",
        required=True,
        help="Comma separated, ordered list of experiment groups.",
    )
    parser.add_argument(
        "--group",
        default=common.ALL_GROUPS,
        help="Experiment group targeted by the step (default: all groups).",
    )
    parser.add_argument(
        "-p",
        "--param",
        action="append",
        default=[],
        type=parse_param,
        help="Component parameter in the 'Key=Value' format, can be repeated.",
    )
    parser.add_argument(
        "-d",
        "--state-dir",
        default=configuration.FLEET_STATE_DIR,
        help="Path to the directory of the state store (default: `FLEET_STATE_DIR`).",
    )
    return parser.parse_args()


def main() -> int:
    logging.basicConfig(format="%(levelname)s:%(message)s", level=logging.INFO)
    args = get_args()

    groups = tuple(g.strip() for g in args.groups.split(",") if g.strip())
    if not groups:
        LOGGER.error("At least one experiment group must be given.")
        return 1

    services = base.ProviderServices(
        store=store.JsonFileStore(args.state_dir),
        tip_client=tip_client.HttpTipClient(),
        diagnostics_sink=diagnostics.LogDiagnosticsSink(),
    )
    try:
        provider = registry.create_provider(args.step_type, services)
    except common.SchemaError as exc:
        LOGGER.error(str(exc))  # noqa: TRY400
        return 1

    context = common.ExperimentContext(
        experiment_id=args.experiment_id, step_id=args.step_id, groups=groups
    )
    component = common.ExperimentComponent(
        step_type=args.step_type, group=args.group, parameters=dict(args.param)
    )
    result = provider.execute(context=context, component=component)

    print(result.status.value)
    if result.error:
        LOGGER.error(f"{type(result.error).__name__}: {result.error}")

    return EXIT_CODES[result.status]


if __name__ == "__main__":
    sys.exit(main())
