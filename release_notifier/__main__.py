"""Entry point for running the release notifier module directly"""
from release_notifier.cli import main

if __name__ == "__main__":
    main()
