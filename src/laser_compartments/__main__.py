"""
Entrypoint module, in case you use `python -mlaser_compartments`.
"""

from laser_compartments.cli import main

if __name__ == "__main__":
    main()
