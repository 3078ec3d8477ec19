"""
Request dependencies
"""

from fastapi import Request

from ..system import LendingSystem


def get_lending_system(request: Request) -> LendingSystem:
    """The LendingSystem the application was created with"""
    return request.app.state.lending_system
