"""HTTP surface for studyrag."""

from studyrag.api.app import AppDependencies, build_dependencies, create_app

__all__ = ["AppDependencies", "build_dependencies", "create_app"]
