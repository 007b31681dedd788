"""Run the notification consumer: python -m notifier."""

from notifier.runner import main

if __name__ == "__main__":
    main()
