#!/usr/bin/env python3
"""
Build standalone cosesigntool binaries with PyInstaller.
"""

import os
import platform
import subprocess
import sys
from pathlib import Path

TARGETS = [
    ("cosesigntool.py", "cosesigntool"),
    ("cosesign_mcp_server.py", "cosesign-mcp-server"),
]


def platform_suffix(system: str, machine: str) -> str:
    if system == "darwin":
        return "macos-arm64" if machine == "arm64" else "macos-x86_64"
    if system == "windows":
        return f"windows-{machine}"
    return f"{system}-{machine}"


def build_binary(script_path, output_name, dist_dir):
    """Build a single binary using PyInstaller."""
    cmd = [
        sys.executable,
        "-m",
        "PyInstaller",
        "--onefile",
        "--name",
        output_name,
        "--distpath",
        str(dist_dir),
        "--specpath",
        str(dist_dir),
        str(script_path),
    ]
    print(f"Building {output_name}...")
    try:
        result = subprocess.run(cmd, cwd=os.getcwd(), capture_output=True, text=True)
    except OSError as e:
        print(f"Error running PyInstaller: {e}")
        return False
    if result.returncode != 0:
        print(f"Command failed: {' '.join(cmd)}")
        print(f"stdout: {result.stdout}")
        print(f"stderr: {result.stderr}")
        return False
    return True


def main(argv: list[str] | None = None) -> int:
    _ = argv
    project_root = Path(__file__).parent.parent
    os.chdir(project_root)

    binaries_dir = project_root / "dist" / "binaries"
    binaries_dir.mkdir(parents=True, exist_ok=True)
    suffix = platform_suffix(platform.system().lower(), platform.machine().lower())

    for script, name in TARGETS:
        script_path = project_root / script
        if not script_path.exists():
            print(f"Error: {script_path} not found")
            return 1
        if not build_binary(script_path, f"{name}-{suffix}", binaries_dir):
            print(f"Failed to build {name} binary")
            return 1

    print(f"Binaries built successfully in {binaries_dir}")
    for binary in sorted(binaries_dir.iterdir()):
        if binary.is_file():
            print(f"  {binary.name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
