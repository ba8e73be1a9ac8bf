"""Entry point for ``python -m portfwd``."""

from portfwd.cli.main import main

if __name__ == "__main__":
    main()
