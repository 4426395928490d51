from controlplane.proxy.tenant import BACKENDS, BackendSpec, ProxyResponse, TenantProxy, build_proxies, extract_scope_ids

__all__ = ["BACKENDS", "BackendSpec", "ProxyResponse", "TenantProxy", "build_proxies", "extract_scope_ids"]
