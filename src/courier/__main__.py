"""Allow ``python -m courier``."""

from courier.cli.main import main

main()
