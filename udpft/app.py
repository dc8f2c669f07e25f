"""
Interactive launcher for the UDP file transfer protocol (RRQ/WRQ/DEL).

This script provides a simple terminal UI to run either a server or a
menu-driven client. When a request goes unacknowledged the client asks the
operator whether to run the retry sequence again.
"""

import argparse
import getpass
import os
from types import SimpleNamespace

from .codec import AesCtrCodec, build_codec
from .console import ANSI_BLUE, ANSI_CYAN, ANSI_DIM, ANSI_YELLOW, LINE, configure_logging, paint, section
from .errors import TransportUnavailable
from .protocol import DEFAULT_PORT, Packet, operation_name
from .client import run as run_client_op
from .rdt import MAX_RETRIES, TIMEOUT_SECONDS, set_wire_trace
from .server import FileServer, ServerConfig

QUIT_WORDS = {"q", "quit", "exit"}

MODE_CHOICES = {"1": "server", "server": "server", "s": "server", "2": "client", "client": "client", "c": "client"}
MENU_CHOICES = {"1": "read", "2": "write", "3": "delete", "4": "exit"}
CIPHER_CHOICES = {"": "xor", "1": "xor", "xor": "xor", "2": "aes", "aes": "aes", "3": "none", "none": "none"}


def show_banner() -> None:
    print()
    print(paint("=== UDP File Transfer ===", ANSI_CYAN))
    print(paint(" RRQ / WRQ / DEL with encrypted, checksummed payloads", ANSI_BLUE))
    print(paint(LINE, ANSI_DIM))
    print(" Answer q, quit or exit to any question (or hit Ctrl+C) to leave.")


def show_menu() -> None:
    print()
    print(paint("=== UDP File Transfer Client ===", ANSI_CYAN))
    print("1. Download a file (RRQ)")
    print("2. Upload a file (WRQ)")
    print("3. Delete a file (DEL)")
    print("4. Exit")


# Reads one trimmed answer; quit words leave the launcher
def ask(question: str, reader=input) -> str:
    answer = reader(question).strip()
    if answer.lower() in QUIT_WORDS:
        raise KeyboardInterrupt
    return answer


def prompt_text(label: str, default: str) -> str:
    return ask(f"> {label} [{default}]: ") or default


def prompt_int(label: str, default: int, min_value: int = 1, max_value: int = 65535) -> int:
    """Ask for a whole number in ``[min_value, max_value]``; blank keeps ``default``."""
    while True:
        answer = ask(f"> {label} [{default}]: ")
        if not answer:
            return default
        if answer.isdigit() and min_value <= int(answer) <= max_value:
            return int(answer)
        print(f"{label} must be a number between {min_value} and {max_value}.")


def prompt_required_text(label: str) -> str:
    while True:
        answer = ask(f"> {label}: ")
        if answer:
            return answer
        print(f"{label} cannot be empty.")


# Repeats the question until the answer is one of the keys in ``choices``
def prompt_choice(question: str, choices: dict, hint: str) -> str:
    while True:
        answer = ask(question).lower()
        if answer in choices:
            return choices[answer]
        print(hint)


def prompt_mode() -> str:
    return prompt_choice("> Run as [1] server or [2] client: ", MODE_CHOICES, "Pick 1 (server) or 2 (client).")


def prompt_menu_choice() -> str:
    return prompt_choice("Choose an option (1-4): ", MENU_CHOICES, "Invalid choice! Please try again.")


def prompt_cipher() -> SimpleNamespace:
    """Ask for the payload cipher; server and client must be given identical settings.

    An empty AES key generates a fresh key/IV pair and prints it for the peer.
    """
    while True:
        cipher = prompt_choice(
            "> Payload cipher: [1] xor, [2] aes, [3] none: ",
            CIPHER_CHOICES,
            "Pick 1 (xor), 2 (aes) or 3 (none).",
        )
        if cipher != "aes":
            return SimpleNamespace(cipher=cipher, key=None, iv=None)
        key = ask("> AES key hex (hidden, blank generates one): ", reader=getpass.getpass)
        if not key:
            generated = AesCtrCodec.generate()
            print(paint(f"Share with the peer: --key {generated.key.hex()} --iv {generated.iv.hex()}", ANSI_YELLOW))
            return SimpleNamespace(cipher="aes", key=generated.key.hex(), iv=generated.iv.hex())
        iv = prompt_required_text("AES IV hex")
        try:
            build_codec("aes", key, iv)
        except ValueError as exc:
            print(f"Rejected AES settings: {exc}")
            continue
        return SimpleNamespace(cipher="aes", key=key, iv=iv)


def prompt_retry(packet: Packet, attempts: int) -> bool:
    """Ask whether to restart the bounded retry sequence for an unacknowledged request."""
    target = f" {packet.filename}" if packet.filename else ""
    answer = input(
        f"> No acknowledgment for {operation_name(packet.operation)}{target} "
        f"after {attempts} attempts. Retry? [y/N]: "
    )
    return answer.strip().lower() in ("y", "yes")


def run_server(cipher: SimpleNamespace, log_file: str) -> None:
    """Run the interactive server workflow.

    The server keeps serving requests until interrupted; each request runs in
    its own worker.
    """
    section("Server Configuration")
    host = prompt_text("Server host", "0.0.0.0")
    port = prompt_int("Server port", DEFAULT_PORT, 1, 65535)
    storage = prompt_text("Storage directory", "server_files")
    backup = prompt_text("Backup directory", "backup_files")

    config = ServerConfig(
        host=host,
        port=port,
        storage_dir=storage,
        backup_dir=backup,
        codec=build_codec(cipher.cipher, cipher.key, cipher.iv),
    )
    server = FileServer(config)
    try:
        server.start()
    except TransportUnavailable as exc:
        print(f"[server] {exc}")
        return

    section("Server Ready")
    print(f"[server] listening on {host}:{port}; failures are logged to {log_file}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\n[server] stopped by user")


def run_client(cipher: SimpleNamespace) -> None:
    """Run the interactive client menu until the operator exits."""
    section("Client Configuration")
    server_host = prompt_text("Server host", "127.0.0.1")
    server_port = prompt_int("Server port", DEFAULT_PORT, 1, 65535)

    while True:
        show_menu()
        op = prompt_menu_choice()
        if op == "exit":
            print("Exiting...")
            return

        remote_file = prompt_required_text("Enter filename")
        local_file = remote_file
        if op == "read":
            local_file = prompt_text("Local save path", os.path.basename(remote_file))
        elif op == "write":
            local_file = prompt_text("Local source file", remote_file)
            remote_file = os.path.basename(remote_file)

        args = SimpleNamespace(
            op=op,
            server_host=server_host,
            server_port=server_port,
            remote_file=remote_file,
            local_file=local_file,
            timeout=TIMEOUT_SECONDS,
            retries=MAX_RETRIES,
            cipher=cipher.cipher,
            key=cipher.key,
            iv=cipher.iv,
        )
        run_client_op(args, on_exhausted=prompt_retry)


def main() -> None:
    """Parse CLI flags, configure logging/tracing, and launch server or client mode."""
    parser = argparse.ArgumentParser(description="UDP file transfer interactive launcher")
    parser.add_argument("--trace", action="store_true", help="Print every packet sent and received")
    parser.add_argument("--log-file", default="server_error.log", help="Server failure log (server mode)")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    args = parser.parse_args()

    show_banner()
    try:
        section("Mode Selection")
        mode = prompt_mode()
        section("Cipher Configuration")
        cipher = prompt_cipher()
        print(paint(f"Launching in {mode.upper()} mode (cipher={cipher.cipher})", ANSI_BLUE))

        if mode == "server":
            configure_logging(args.log_level, args.log_file)
            set_wire_trace(args.trace, "SERVER")
            run_server(cipher, args.log_file)
        else:
            configure_logging(args.log_level)
            set_wire_trace(args.trace, "CLIENT")
            run_client(cipher)
    except KeyboardInterrupt:
        print("\n[app] terminated by user")


if __name__ == "__main__":
    main()
