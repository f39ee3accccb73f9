import argparse
import json
import sys
from pathlib import Path

from appliance_disk.config import settings
from appliance_disk.config.topology import load_disk
from appliance_disk.logging import LoggerFactory, setup_logging
from appliance_disk.services.builder import CommandFiller, ImageBuilder
from appliance_disk.storage.exceptions import ImageError
from appliance_disk.storage.partition_table import fdisk_script
from appliance_disk.storage.remote import RemoteConfig


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="appliance-disk", description="Build bootable virtual appliance disk images"
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log every mount-state probe")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")

    commands = parser.add_subparsers(dest="command", required=True)

    plan = commands.add_parser("plan", help="Print the fdisk script for a topology")
    plan.add_argument("--config", required=True, help="Topology file (.json or .xml)")
    plan.add_argument("--topology", help="Topology name or index")

    build = commands.add_parser("build", help="Build a disk image")
    build.add_argument("--config", required=True, help="Topology file (.json or .xml)")
    build.add_argument("--topology", help="Topology name or index")
    build.add_argument("--image", required=True, help="Main image path")
    build.add_argument("--rootfs", required=True, help="Mount point for the root filesystem")
    build.add_argument("--filler-cmd", help="Command that populates the root filesystem")
    build.add_argument("--app-cmd", help="Command that installs the application")
    build.add_argument("--compress", action="store_true", help="Pack the image into a .tgz")
    build.add_argument("--remote-host", help="Build the image on this host over ssh")
    build.add_argument("--remote-user", default="root")
    build.add_argument("--remote-port", type=int, default=22)
    build.add_argument("--identity-file")

    config = commands.add_parser("config", help="Show or change engine settings")
    config_commands = config.add_subparsers(dest="config_command", required=True)
    config_commands.add_parser("show", help="Print the effective settings")
    config_set = config_commands.add_parser("set", help="Change one setting")
    config_set.add_argument("key", choices=sorted(settings.DEFAULT_SETTINGS))
    config_set.add_argument("value", help="JSON value, or a plain string")
    return parser


def _plan(args) -> int:
    disk = load_disk(args.config, args.topology)
    sys.stdout.write(fdisk_script(disk))
    return 0


def _config(args) -> int:
    if args.config_command == "set":
        try:
            value = json.loads(args.value)
        except json.JSONDecodeError:
            value = args.value
        settings.set_setting(args.key, value)
    sys.stdout.write(json.dumps(settings.settings_store.values, indent=2, sort_keys=True) + "\n")
    return 0


def _build(args) -> int:
    disk = load_disk(args.config, args.topology, image_path=args.image)
    filler = CommandFiller(args.filler_cmd, args.app_cmd) if args.filler_cmd else None
    remote = None
    if args.remote_host:
        remote = RemoteConfig(
            host=args.remote_host,
            user=args.remote_user,
            port=args.remote_port,
            identity_file=args.identity_file,
        )
    artifact = ImageBuilder(
        disk, args.rootfs, filler=filler, remote=remote, compress=args.compress
    ).run()
    print(artifact.path)
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    log_dir = args.log_dir
    if log_dir is None and settings.get_setting("log_dir"):
        log_dir = Path(settings.get_setting("log_dir"))
    setup_logging(debug=args.debug, trace=args.trace, log_dir=log_dir)
    log = LoggerFactory.for_system()

    try:
        if args.command == "plan":
            return _plan(args)
        if args.command == "config":
            return _config(args)
        return _build(args)
    except ImageError as error:
        log.error(str(error))
        return 1


if __name__ == "__main__":
    sys.exit(main())
