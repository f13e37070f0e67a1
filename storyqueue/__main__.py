"""Allow ``python -m storyqueue``."""

from storyqueue.cli import run

if __name__ == "__main__":
    run()
