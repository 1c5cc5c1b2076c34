"""Allow ``python -m MossFetcher``."""

from .cli import main

if __name__ == "__main__":
    main()
