# Made by trex099
# https://github.com/Trex099/Glint
"""
Core utility functions for cloudvm.

This module provides a collection of helper functions for command execution,
file operations, downloads, user interaction, and host port checks.
"""
import os
import sys
import socket
import shlex
import logging
import subprocess

import psutil
import questionary
import requests
from tqdm import tqdm
from rich.console import Console
from rich.panel import Panel

logger = logging.getLogger(__name__)

console = Console()

# --- Text and Styling ---

def print_header(text):
    """Prints a styled header to the console."""
    console.print(Panel(f"[bold cyan]{text}[/]", expand=False, border_style="blue"))

def print_info(text):
    """Prints an informational message to the console."""
    console.print(f"[cyan]ℹ️  {text}[/]")

def print_success(text):
    """Prints a success message to the console."""
    console.print(f"[green]✅ {text}[/]")

def print_warning(text):
    """Prints a warning message to the console."""
    console.print(f"[yellow]⚠️  {text}[/]")

def print_error(text):
    """Prints an error message to stderr without rich markup."""
    print(f"❌ {text}", file=sys.stderr)

def clear_screen():
    """Clears the console screen."""
    console.clear()


def wait_for_enter(message="Press Enter to continue..."):
    """
    Wait for the user to press Enter.

    ESC and Ctrl+C just return.
    """
    try:
        questionary.text(f"\n{message}").ask()
    except (KeyboardInterrupt, EOFError):
        pass


class UserCancelled(Exception):
    """Exception raised when user cancels an operation via ESC or Ctrl+C."""
    pass


def safe_ask(prompt_result):
    """
    Safely handle questionary .ask() result.

    If user pressed ESC/Ctrl+C (returns None), raises UserCancelled.
    Otherwise returns the result.
    """
    if prompt_result is None:
        raise UserCancelled("Operation cancelled by user")
    return prompt_result


def safe_text_ask(prompt, default="", allow_empty=False):
    """
    Ask for text input with cancellation handling.

    Returns:
        User input (stripped) or default value

    Raises:
        UserCancelled if user presses ESC/Ctrl+C
    """
    result = safe_ask(questionary.text(prompt, default=str(default)).ask())
    stripped = result.strip()
    if not stripped and not allow_empty:
        return str(default)
    return stripped


def select_from_list(items, prompt):
    """
    Prompts the user to select an item from a list.
    Returns None when the list is empty or the user cancels.
    """
    if not items:
        print_warning("No items to select from.")
        return None

    custom_style = questionary.Style([
        ('selected', 'fg:#673ab7 bold'),
        ('highlighted', 'fg:#673ab7 bold'),
        ('pointer', 'fg:#673ab7 bold'),
    ])
    try:
        return questionary.select(
            message=prompt,
            choices=list(items),
            use_indicator=True,
            style=custom_style
        ).ask()
    except KeyboardInterrupt:
        print_info("\nSelection cancelled by user.")
        return None

# --- Command Execution ---

def format_command(cmd_list):
    """Shell-quoted rendering of an argument vector, for logs and display."""
    return ' '.join(shlex.quote(str(s)) for s in cmd_list)


def run_command(cmd_list, quiet=True):
    """
    Runs an external tool to completion and returns the CompletedProcess.

    Never raises on a nonzero exit; callers judge the return code.
    Raises FileNotFoundError if the tool is not installed.
    """
    cmd_list = [str(c) for c in cmd_list]
    logger.debug(f"Executing: {format_command(cmd_list)}")
    if not quiet:
        console.print(f"\n[blue]▶️  Executing: {format_command(cmd_list)}[/]")

    result = subprocess.run(
        cmd_list,
        capture_output=True,
        text=True,
        encoding='utf-8',
        errors='ignore',
        check=False
    )
    if result.returncode != 0:
        logger.debug(f"Command exited {result.returncode}: {result.stderr.strip()}")
    return result

# --- File Operations ---

def remove_file(path, quiet=False):
    """Removes a file if present. Returns True if something was removed."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    if not quiet:
        print_success(f"Removed: {path}")
    logger.info(f"Removed {path}")
    return True

# --- Network Utilities ---

def is_port_in_use(port):
    """
    True if something on the host is listening on the TCP port.
    """
    try:
        for conn in psutil.net_connections(kind='tcp'):
            if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
                return True
        return False
    except (psutil.AccessDenied, OSError):
        # Unprivileged on some platforms, fall back to a bind probe
        pass

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind(('', port))
        except OSError:
            return True
    return False

# --- File Downloads ---

def download_file(url, destination, timeout=30, chunk_size=1024 * 1024):
    """
    Downloads a file from a URL to a destination, with a progress bar.

    Raises requests.RequestException or OSError on failure; the caller
    owns cleanup of the partial destination.
    """
    with requests.get(url, stream=True, timeout=timeout) as r:
        r.raise_for_status()
        total_size = int(r.headers.get('content-length', 0))
        with open(destination, 'wb') as f, tqdm(
            total=total_size, unit='B', unit_scale=True,
            desc=os.path.basename(destination), disable=not sys.stderr.isatty()
        ) as pbar:
            for chunk in r.iter_content(chunk_size=chunk_size):
                if chunk:
                    f.write(chunk)
                    pbar.update(len(chunk))
    logger.info(f"Downloaded {url} to {destination}")


def format_bytes(num_bytes):
    """Human-readable byte count."""
    size = float(num_bytes)
    for unit in ('B', 'KiB', 'MiB', 'GiB'):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TiB"
