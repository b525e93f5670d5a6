from fastapi import Request

from pagerops.app_state import AppState


def get_state(request: Request) -> AppState:
    return request.app.state.pagerops
