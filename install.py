#!/usr/bin/env python3
"""Cross-platform install script for tutor-chat.

Usage:
    python install.py          # Production install
    python install.py --dev    # Development install (includes test tools)
"""

import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)


def main() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"Error: Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required. "
            f"You have {sys.version_info.major}.{sys.version_info.minor}."
        )

    print(f"Python {sys.version_info.major}.{sys.version_info.minor} detected. OK.")

    dev = "--dev" in sys.argv
    project_dir = os.path.dirname(os.path.abspath(__file__))
    venv_dir = os.path.join(project_dir, ".venv")
    is_windows = platform.system() == "Windows"
    pip = os.path.join(venv_dir, "Scripts" if is_windows else "bin", "pip")

    if not os.path.isdir(venv_dir):
        print("Creating virtual environment...")
        subprocess.check_call([sys.executable, "-m", "venv", venv_dir])
    else:
        print("Virtual environment already exists.")

    print("Upgrading pip...")
    subprocess.check_call([pip, "install", "--upgrade", "pip"])

    target = ".[dev]" if dev else "."
    print(f"Installing tutor-chat ({'development' if dev else 'production'} mode)...")
    subprocess.check_call([pip, "install", "-e", target] if dev else [pip, "install", target], cwd=project_dir)

    for src, dst in [("config.example.yaml", "config.yaml"), (".env.example", ".env")]:
        src_path = os.path.join(project_dir, src)
        dst_path = os.path.join(project_dir, dst)
        if os.path.exists(dst_path):
            print(f"{dst} already exists, skipping.")
        elif os.path.exists(src_path):
            shutil.copy(src_path, dst_path)
            print(f"Created {dst} from {src}")

    activate_cmd = r".\.venv\Scripts\activate" if is_windows else "source .venv/bin/activate"

    print()
    print("=" * 50)
    print("  tutor-chat installation complete!")
    print("=" * 50)
    print()
    print("Next steps:")
    print("  1. Edit .env - set the drive account and at least one LLM key:")
    print("       DRIVE_ACCOUNT=you@yourdomain")
    print("       DRIVE_SECRET=...")
    print("       OPENROUTER_API_KEY=sk-or-...")
    print("  2. Edit config.yaml - pick models and the default one")
    print("  3. Activate the virtual environment:")
    print(f"       {activate_cmd}")
    print("  4. Check the setup:")
    print("       python -m tutor_chat config-check")
    print("       python -m tutor_chat drive-check")
    print("  5. Start the server:")
    print("       python -m tutor_chat start")
    print()


if __name__ == "__main__":
    main()
