"""Allow running as: python -m zigwatch [--log-level LEVEL]"""

from zigwatch.main import main

main()
