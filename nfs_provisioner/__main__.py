# ---------------------------------------------------------------------------- #

from __future__ import annotations

import os
from argparse import ArgumentParser, Namespace

from kubernetes_asyncio.config import load_incluster_config  # type: ignore

import nfs_provisioner.agent.controller
from nfs_provisioner.shared.config import ProvisionerConfig

# ---------------------------------------------------------------------------- #


def main() -> None:
    """
    Usage:

        python -m nfs_provisioner controller

    Settings are read from the environment, see `ProvisionerConfig`.
    """

    args = _parse_args()

    config = ProvisionerConfig.from_environment(os.environ)

    load_incluster_config()

    if args.mode == "controller":
        nfs_provisioner.agent.controller.run(config)


def _parse_args() -> Namespace:

    parser = ArgumentParser(prog="nfs_provisioner")

    subparsers = parser.add_subparsers(dest="mode", required=True)

    # 'controller' subcommand

    subparsers.add_parser("controller")

    # parse arguments

    return parser.parse_args()


# ---------------------------------------------------------------------------- #

if __name__ == "__main__":
    main()

# ---------------------------------------------------------------------------- #
