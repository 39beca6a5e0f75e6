import sys

from voice_roleplay.cli import main

if __name__ == "__main__":
    sys.exit(main())
