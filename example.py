import logging
from pathlib import Path

from animl_watchlist import Config, animl_watchlist


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    db_path = Path(__file__).with_name("animl.db")
    config = Config(sqlite_path=str(db_path), n_concurrent=2)
    logging.info("Starting watchlist run; db=%s", db_path)
    counts = animl_watchlist(["Xinil", "Kineta"], config=config)
    logging.info("Watchlist run completed: %s", counts)


if __name__ == "__main__":
    main()
