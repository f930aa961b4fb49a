from prepaid_meter.api.router import build_router, install_error_handlers

__all__ = ["build_router", "install_error_handlers"]
