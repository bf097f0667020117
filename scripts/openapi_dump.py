# FILE: scripts/openapi_dump.py
# Usage: python scripts/openapi_dump.py            (schema of a freshly built app)
#        python scripts/openapi_dump.py <url>      (e.g. http://127.0.0.1:8010/openapi.json
#                                                   of `uvicorn --factory dicehouse.service_http:create_app`)
import json, sys, urllib.request

if len(sys.argv) > 1:
    doc = json.load(urllib.request.urlopen(sys.argv[1]))
else:
    from dicehouse.service_http import create_app
    doc = create_app().openapi()
print(json.dumps(doc, indent=2))
