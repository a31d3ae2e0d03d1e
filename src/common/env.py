"""Environment variable loading utilities.

Loads a ``.env`` file with python-dotenv before configuration is read, so the
service entrypoint, the CLI driver and the test suite all see the same
settings. Import this module early:

    from src.common.env import load_env
    load_env()

The ``.env`` file is searched for in the current working directory, then in
the project root (the nearest parent holding ``pyproject.toml`` or ``.git``).
Variables already set in the shell take precedence (``override=False``).
"""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv as _load_dotenv


def find_project_root(start_path: Optional[Path] = None) -> Optional[Path]:
    """Find the project root by looking for pyproject.toml or .git.

    Args:
        start_path: Starting directory for search. Defaults to current working directory.

    Returns:
        Path to project root, or None if not found.
    """
    current = start_path or Path.cwd()

    for parent in [current, *current.parents]:
        if (parent / "pyproject.toml").exists():
            return parent
        if (parent / ".git").exists():
            return parent

    return None


def find_env_file(filename: str = ".env") -> Optional[Path]:
    """Find an env file in the working directory or the project root."""
    cwd_env = Path.cwd() / filename
    if cwd_env.exists():
        return cwd_env

    project_root = find_project_root()
    if project_root:
        root_env = project_root / filename
        if root_env.exists():
            return root_env

    return None


def load_env(
    env_file: Optional[str] = None,
    override: bool = False,
    verbose: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Args:
        env_file: Path to .env file. If None, searches standard locations.
        override: If True, .env values override existing environment variables.
        verbose: If True, print which file is being loaded.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    dotenv_path = Path(env_file) if env_file else find_env_file()

    if dotenv_path is None or not dotenv_path.exists():
        if verbose:
            print("[env] No .env file found, using environment variables only")
        return False

    if verbose:
        print(f"[env] Loading environment from: {dotenv_path}")

    _load_dotenv(dotenv_path=dotenv_path, override=override)

    return True
