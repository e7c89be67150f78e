"""native-bundler.

A small build utility that packages a compiled application together with the
native shared libraries it transitively depends on, producing a ``dist/`` tree
that runs on another machine of the same OS and architecture.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
