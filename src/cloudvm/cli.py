# Made by trex099
# https://github.com/Trex099/Glint
"""
Command line interface for cloudvm

`cloudvm` with no arguments opens the interactive menu. Every other
operation is available as a subcommand taking its fields as flags.
"""

import sys
import argparse

from rich.console import Console
from rich.table import Table

from . import __version__
from .config import CONFIG, OS_CATALOG, setup_logging
from .core_utils import print_error
from .error_handling import VMError, get_error_handler
from .lifecycle import LifecycleController, EDITABLE_FIELDS, FIELD_ALIASES

console = Console()


def _confirmer(assume_yes):
    def confirm(message):
        if assume_yes:
            return True
        if not sys.stdin.isatty():
            print_error(f"{message} Re-run with --yes to confirm.")
            return False
        # Imported here so non-interactive commands never load prompt_toolkit
        from .main import confirm_prompt
        return confirm_prompt(message)
    return confirm


def build_parser():
    parser = argparse.ArgumentParser(prog="cloudvm", description="Manage local QEMU VMs built from cloud images")
    parser.add_argument("--version", "-v", action="version", version=f"cloudvm {__version__}")
    parser.add_argument("--vms-dir", help=f"Directory holding VM records and images (default: {CONFIG['VMS_DIR']})")
    sub = parser.add_subparsers(dest="command", metavar="command")

    sub.add_parser("list", help="List VMs with their status")
    sub.add_parser("menu", help="Open the interactive menu (default)")

    create = sub.add_parser("create", help="Create and provision a new VM")
    create.add_argument("name", help="Name of the VM")
    create.add_argument("--os", required=True, choices=[p.label for p in OS_CATALOG], metavar="LABEL",
                        help="Operating system: " + ", ".join(p.label for p in OS_CATALOG))
    create.add_argument("--hostname", help="Guest hostname (default: per OS)")
    create.add_argument("--username", help="Guest user (default: per OS)")
    create.add_argument("--password", help="Guest password for root and the user (default: per OS)")
    create.add_argument("--disk-size", help=f"Disk size such as 20G or 512M (default: {CONFIG['DEFAULT_DISK_SIZE']})")
    create.add_argument("--memory", help=f"Memory in MiB (default: {CONFIG['DEFAULT_MEMORY']})")
    create.add_argument("--cpus", help=f"Number of vCPUs (default: {CONFIG['DEFAULT_CPUS']})")
    create.add_argument("--ssh-port", help=f"Host port forwarded to guest port 22 (default: {CONFIG['DEFAULT_SSH_PORT']})")
    create.add_argument("--gui", action="store_true", help="Open a graphical display instead of the serial console")
    create.add_argument("--forward", action="append", default=[], metavar="HOST:GUEST",
                        help="Extra TCP port forward, may be repeated")

    start = sub.add_parser("start", help="Start a VM")
    start.add_argument("name")
    start.add_argument("--background", "-b", action="store_true", help="Detach from the terminal")

    for command, text in (("stop", "Stop a running VM"), ("restart", "Stop and start a VM in the background"),
                          ("info", "Show VM details"), ("perf", "Show VM details with live process figures")):
        sub.add_parser(command, help=text).add_argument("name")

    edit = sub.add_parser("edit", help="Change one field of a VM")
    edit.add_argument("name")
    edit.add_argument("field", choices=sorted(set(EDITABLE_FIELDS) | set(FIELD_ALIASES)), metavar="field",
                      help="One of: " + ", ".join(EDITABLE_FIELDS))
    edit.add_argument("value")

    resize = sub.add_parser("resize", help="Change the disk size of a stopped VM")
    resize.add_argument("name")
    resize.add_argument("size", help="New size such as 40G")
    resize.add_argument("--yes", "-y", action="store_true", help="Do not ask before shrinking")

    delete = sub.add_parser("delete", help="Delete a VM with its image and seed")
    delete.add_argument("name")
    delete.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    return parser


def _print_list(controller):
    vms = controller.list_vms()
    if not vms:
        console.print("No VMs found.")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("NAME")
    table.add_column("STATUS")
    for name, running in vms:
        table.add_row(name, "running" if running else "stopped")
    console.print(table)


def _print_mapping(data):
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan", justify="right")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                table.add_row(f"{key}.{sub_key}", str(sub_value))
        elif isinstance(value, list):
            table.add_row(key, ', '.join(value) or "none")
        else:
            table.add_row(key, "" if value is None else str(value))
    console.print(table)


def run(args, controller):
    """Dispatch a parsed command. Returns the process exit code."""
    command = args.command or "menu"

    if command == "menu":
        from .main import cloudvm_menu
        cloudvm_menu(controller)
    elif command == "list":
        _print_list(controller)
    elif command == "create":
        controller.create({
            'name': args.name,
            'os': args.os,
            'hostname': args.hostname,
            'username': args.username,
            'password': args.password,
            'disk_size': args.disk_size,
            'memory': args.memory,
            'cpus': args.cpus,
            'ssh_port': args.ssh_port,
            'gui_mode': args.gui,
            'port_forwards': ','.join(args.forward),
        })
    elif command == "start":
        result = controller.start(args.name, foreground=not args.background)
        if isinstance(result, int):
            return 0 if result == 0 else 1
    elif command == "stop":
        controller.stop(args.name)
    elif command == "restart":
        controller.restart(args.name)
    elif command == "info":
        _print_mapping(controller.info(args.name))
    elif command == "perf":
        _print_mapping(controller.performance(args.name))
    elif command == "edit":
        controller.edit(args.name, args.field, args.value)
    elif command == "resize":
        controller.resize(args.name, args.size)
    elif command == "delete":
        if not controller.delete(args.name):
            return 1
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    controller = LifecycleController.from_config(
        confirm=_confirmer(getattr(args, 'yes', False)),
        vms_dir=args.vms_dir
    )
    try:
        return run(args, controller)
    except VMError as e:
        get_error_handler().handle_error(e, {'command': args.command})
        return 1
    except KeyboardInterrupt:
        print_error("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
