# Made by trex099
# https://github.com/Trex099/Glint
"""
Interactive menu for cloudvm

Collects input with questionary, re-asks a field until validate() accepts
it, and hands the result to LifecycleController.
"""

import os

import questionary
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import CONFIG, OS_CATALOG, get_os_profile, setup_logging
from .core_utils import (
    clear_screen, print_header, print_error, print_info, print_warning,
    safe_ask, safe_text_ask, select_from_list, wait_for_enter, format_bytes,
    UserCancelled
)
from .error_handling import ValidationError, safe_operation
from .lifecycle import LifecycleController, EDITABLE_FIELDS
from .validation import validate

console = Console()


def confirm_prompt(message):
    """Yes/no question for destructive steps; ESC counts as no."""
    return bool(questionary.confirm(message, default=False).ask())


def prompt_field(prompt, kind, default=""):
    """Ask until the answer passes validation. Returns the normalized value."""
    while True:
        answer = safe_text_ask(f"{prompt}:", default=default, allow_empty=(kind == 'port_forwards'))
        try:
            return validate(kind, answer)
        except ValidationError as e:
            print_error(str(e))
            for suggestion in e.suggestions:
                print_info(suggestion)


def prompt_password(prompt="Password"):
    while True:
        answer = safe_ask(questionary.password(f"{prompt}:").ask())
        try:
            return validate('password', answer)
        except ValidationError as e:
            print_error(str(e))


def select_vm(controller, action_text, running_only=False):
    """
    Prompts the user to select a VM from the list of stored VMs.
    """
    print_header(f"Select VM to {action_text}")
    vms = controller.list_vms()
    if running_only:
        vms = [(name, running) for name, running in vms if running]
    if not vms:
        print_error("No running VMs found." if running_only else "No VMs found.")
        return None
    return select_from_list([name for name, _ in vms], "Choose a VM")


def _render_vm_table(controller):
    table = Table(title="Virtual Machines", expand=False)
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    for name, running in controller.list_vms():
        status = "[green]running[/]" if running else "[dim]stopped[/]"
        table.add_row(name, status)
    return table


def _render_info_panel(info):
    table = Table(box=None, show_header=False)
    table.add_column("Setting", justify="right", style="cyan")
    table.add_column("Value", justify="left")

    status = info['status']
    table.add_row("Status:", f"[bold {'green' if status == 'running' else 'white'}]{status}[/]")
    table.add_row("OS:", info['os'])
    table.add_row("Hostname:", info['hostname'])
    table.add_row("User:", f"{info['username']} / {info['password']}")
    table.add_row("Memory:", f"{info['memory_mb']} MiB")
    table.add_row("CPU Cores:", str(info['cpu_count']))
    table.add_row("Disk:", info['disk_size'])
    table.add_row("SSH:", info['ssh_command'])
    table.add_row("Port Forwards:", ', '.join(info['port_forwards']) or "none")
    table.add_row("Display:", "GUI" if info['gui_mode'] else "headless")
    table.add_row("Created:", info['created_at'])

    image_state = "present" if info['image_present'] else "[red]missing[/]"
    if info.get('image_actual_size') is not None:
        image_state += (f" ({format_bytes(info['image_actual_size'])} used of "
                        f"{format_bytes(info['image_virtual_size'] or 0)})")
    table.add_row("Image:", f"{info['image_file']} {image_state}")
    table.add_row("Seed:", f"{info['seed_file']} "
                  f"{'present' if info['seed_present'] else '[yellow]missing[/]'}")

    process = info.get('process')
    if process:
        table.add_row("PID:", str(process['pid']))
        table.add_row("Uptime:", process['uptime_formatted'])
        table.add_row("CPU:", f"{process['cpu_percent']}%")
        table.add_row("RSS:", f"{process['memory_mb']} MiB")
        table.add_row("Threads:", str(process['threads']))

    return Panel(table, title=f"[bold purple]VM '{info['name']}'[/]", border_style="purple")


@safe_operation
def create_vm_wizard(controller):
    """Walk through every field of a new VM."""
    print_header("Create New VM")
    label = select_from_list([p.label for p in OS_CATALOG], "Choose an operating system")
    if not label:
        return None
    profile = get_os_profile(label)

    while True:
        name = prompt_field("VM name (letters, digits, - and _)", 'name', profile.default_hostname)
        if name not in controller.store.list():
            break
        print_error(f"A VM named '{name}' already exists.")

    definition = {
        'name': name,
        'os': label,
        'hostname': prompt_field("Hostname", 'hostname', name),
        'username': prompt_field("Username", 'username', profile.default_username),
    }
    print_info(f"Leave the password empty to use the default for {label}.")
    password = safe_ask(questionary.password("Password:").ask())
    definition['password'] = validate('password', password) if password else profile.default_password
    definition['disk_size'] = prompt_field("Disk size (e.g. 20G)", 'size', CONFIG['DEFAULT_DISK_SIZE'])
    definition['memory'] = prompt_field("Memory in MiB", 'memory', CONFIG['DEFAULT_MEMORY'])
    definition['cpus'] = prompt_field("CPU cores", 'cpus', CONFIG['DEFAULT_CPUS'])
    definition['ssh_port'] = prompt_field("SSH port", 'port', CONFIG['DEFAULT_SSH_PORT'])
    definition['gui_mode'] = safe_ask(questionary.confirm("Enable GUI display?", default=False).ask())
    definition['port_forwards'] = prompt_field("Extra port forwards host:guest, comma separated (empty for none)",
                                         'port_forwards', "")
    return controller.create(definition)


@safe_operation
def start_vm_interactive(controller):
    vm_name = select_vm(controller, "Start")
    if not vm_name:
        return None
    background = safe_ask(questionary.confirm("Run in the background?", default=False).ask())
    return controller.start(vm_name, foreground=not background)


@safe_operation
def stop_vm_interactive(controller):
    vm_name = select_vm(controller, "Stop", running_only=True)
    if vm_name:
        return controller.stop(vm_name)
    return None


@safe_operation
def show_info(controller, performance=False):
    vm_name = select_vm(controller, "Inspect")
    if not vm_name:
        return None
    info = controller.performance(vm_name) if performance else controller.info(vm_name)
    console.print(_render_info_panel(info))
    return info


@safe_operation
def edit_vm_interactive(controller):
    vm_name = select_vm(controller, "Edit")
    if not vm_name:
        return None
    record = controller.store.load(vm_name)
    field = select_from_list([f for f in EDITABLE_FIELDS if f != 'disk_size'], "Field to change")
    if not field:
        return None
    if field == 'password':
        value = prompt_password("New password")
    elif field == 'gui_mode':
        value = safe_ask(questionary.confirm("Enable GUI display?", default=record.gui_mode).ask())
    else:
        current = getattr(record, field)
        if field == 'port_forwards':
            current = ','.join(str(fw) for fw in current)
        value = prompt_field(f"New {field}", EDITABLE_FIELDS[field], current)
        if field == 'port_forwards':
            value = ','.join(f"{h}:{g}" for h, g in value)
    return controller.edit(vm_name, field, value)


@safe_operation
def resize_vm_interactive(controller):
    vm_name = select_vm(controller, "Resize")
    if not vm_name:
        return None
    record = controller.store.load(vm_name)
    new_size = prompt_field(f"New disk size [current: {record.disk_size}]", 'size', record.disk_size)
    return controller.resize(vm_name, new_size)


@safe_operation
def delete_vm_interactive(controller):
    vm_name = select_vm(controller, "Delete")
    if vm_name:
        return controller.delete(vm_name)
    return None


def cloudvm_menu(controller=None):
    """Main menu for VM management."""
    setup_logging()
    controller = controller or LifecycleController.from_config(confirm=confirm_prompt)
    os.makedirs(controller.vms_dir, exist_ok=True)

    actions = {
        "1. Create New VM": lambda: create_vm_wizard(controller),
        "2. Start VM": lambda: start_vm_interactive(controller),
        "3. Stop a Running VM": lambda: stop_vm_interactive(controller),
        "4. Show VM Info": lambda: show_info(controller),
        "5. Edit VM": lambda: edit_vm_interactive(controller),
        "6. Resize VM Disk": lambda: resize_vm_interactive(controller),
        "7. Performance": lambda: show_info(controller, performance=True),
        "8. Delete VM": lambda: delete_vm_interactive(controller),
    }
    exit_choice = "9. Exit"

    while True:
        clear_screen()
        console.print("[bold]Cloud Image VM Management[/]")
        console.rule(style="dim")
        console.print(_render_vm_table(controller))
        try:
            choice = questionary.select("Select an option", choices=[*actions, exit_choice]).ask()
            if choice is None or choice == exit_choice:
                break
            actions[choice]()
            wait_for_enter("Press Enter to return to the menu...")
        except UserCancelled:
            print_warning("Cancelled.")
            wait_for_enter()
        except (KeyboardInterrupt, EOFError):
            break
        except RuntimeError as e:
            if "lost sys.stdin" in str(e):
                print_error("This script is interactive and cannot be run in this environment.")
                break
            raise
