from .json_route_repository import JsonRouteRepository

__all__ = ["JsonRouteRepository"]
