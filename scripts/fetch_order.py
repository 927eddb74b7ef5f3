import os, sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from api import ProtocolClient
from config import load_settings

# Usage: fetch_order.py <year> <CodPedApoio> [pdf=1|0]
if len(sys.argv) < 3:
    print("usage: fetch_order.py <year> <CodPedApoio> [pdf]")
    sys.exit(2)

year = int(sys.argv[1])
code = sys.argv[2]
include_pdf = (sys.argv[3] if len(sys.argv) > 3 else "1") != "0"

client = ProtocolClient(load_settings())
result = client.fetch_order(year, code, include_pdf=include_pdf)

print(f"success={result.success} fault={result.fault} code={result.return_code} msg={result.error_message}")
for i, a in enumerate(result.pdf_artifacts, start=1):
    print(f"  PDF {i}: {a.size} bytes, {a.file_type.value}, sha256={a.sha256}")
for i, a in enumerate(result.graphic_artifacts, start=1):
    print(f"  Grafico {i}: {a.size} bytes, {a.file_type.value}, sha256={a.sha256}")
