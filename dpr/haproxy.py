"""HAProxy configuration for the cluster load balancer container."""

from __future__ import annotations

from dataclasses import dataclass, field

from jinja2 import Environment, StrictUndefined, TemplateError

from .errors import ConfigurationError
from .settings import settings

IMAGE_NAME = "haproxy"

CONFIG_PATH = "/usr/local/etc/haproxy/haproxy.cfg"

DEFAULT_TEMPLATE = """# generated by dpr
global
  log /dev/log local0
  log /dev/log local1 notice
  daemon
  # limit memory usage to approximately 18 MB
  maxconn 100000

resolvers docker
  nameserver dns 127.0.0.11:53

defaults
  log global
  mode tcp
  option dontlognull
  timeout connect 5000
  timeout client 50000
  timeout server 50000
  # allow to boot despite dns don't resolve backends
  default-server init-addr none

frontend stats
  mode http
  bind *:8404
  stats enable
  stats uri /stats
  stats refresh 1s
  stats admin if TRUE

frontend control-plane
  bind *:{{ frontend_port }}
{%- if ipv6 %}
  bind :::{{ frontend_port }};
{%- endif %}
  default_backend kube-apiservers

backend kube-apiservers
  option httpchk GET /healthz
  http-check expect status 401
  {%- for name, server in backend_servers|dictsort %}
  server {{ name }} {{ server.address|join_host_port(backend_port) }} check check-ssl verify none resolvers docker resolve-prefer {{ "ipv6" if ipv6 else "ipv4" }} weight {{ server.weight }}
  {%- endfor %}
"""


@dataclass(frozen=True)
class BackendServer:
    address: str
    weight: int = 100


@dataclass
class ConfigData:
    frontend_port: str
    backend_port: str
    backend_servers: dict[str, BackendServer] = field(default_factory=dict)
    ipv6: bool = False


def join_host_port(host: str, port: str | int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def image_reference(repository: str = "", tag: str = "") -> str:
    """Return the load balancer image, e.g. ``kindest/haproxy:v20230510-486859a6``."""
    repository = repository or settings.lb_image_repository
    tag = tag or settings.lb_image_tag
    return f"{repository}/{IMAGE_NAME}:{tag}"


_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)
_env.filters["join_host_port"] = join_host_port


def render(data: ConfigData, template: str = DEFAULT_TEMPLATE) -> str:
    """Render an HAProxy configuration.

    ``template`` is a Jinja template that sees ``frontend_port``,
    ``backend_port``, ``backend_servers`` (name -> BackendServer) and ``ipv6``.
    """
    try:
        return _env.from_string(template).render(
            frontend_port=data.frontend_port,
            backend_port=data.backend_port,
            backend_servers=data.backend_servers,
            ipv6=data.ipv6,
        )
    except TemplateError as e:
        raise ConfigurationError(f"failed to render load balancer configuration: {e}") from e
