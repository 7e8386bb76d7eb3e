from .http import HttpResponse, HttpTransport

__all__ = ["HttpResponse", "HttpTransport"]
