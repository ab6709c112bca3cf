from hhproxy.proxy import index as proxy

# uvicorn index:app
app = proxy.create_app()
