"""Allow `python -m phaseflow`."""

from .cli import main

if __name__ == '__main__':
    main()
