"""azconverge: declarative Azure provisioning with dependency-ordered convergence."""

__version__ = "0.1.0"
