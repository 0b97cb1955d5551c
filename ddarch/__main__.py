import sys

from ddarch.main import main


if __name__ == "__main__":
    sys.exit(main())
