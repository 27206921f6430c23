"""Entry point for running CLI as module.

Usage:
    python -m mnemo.interfaces.cli stats
    python -m mnemo.interfaces.cli events --limit 20
"""

if __name__ == "__main__":
    from mnemo.interfaces.cli.app import main
    main()
