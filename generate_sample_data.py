import io
import random

from wallet_workspace import create_app
from wallet_workspace.parsers import write_csv

DEMO_USERNAME = "demo"
DEMO_PASSWORD = "demo1234"

DICTIONARY_CSV = """metric,what_it_is,data_type,higher_is,units_or_range
wallet,Wallet address,text,depends,
pnl,Realised profit and loss,currency,better,USD
vol,Traded volume,currency,depends,USD
win_rate,Share of profitable trades,percent,better,0-100
is_bot,Flagged as automated trader,text,worse,true/false
"""


def sample_rows(count=60):
    rows = []
    for index in range(count):
        rows.append({
            "wallet": f"0x{random.getrandbits(64):016x}",
            "pnl": f"{random.gauss(500, 2500):.2f}",
            "vol": f"{random.lognormvariate(9, 1.2):.2f}",
            "win_rate": f"{random.uniform(20, 80):.1f}%",
            "is_bot": "true" if index % 9 == 0 else "false",
        })
    return rows


def summary_csv(rows, columns):
    lines = ["stat," + ",".join(columns)]
    for label, pick in (("mean", _mean), ("median", _median)):
        values = []
        for column in columns:
            numbers = [float(row[column].rstrip("%")) for row in rows]
            values.append(f"{pick(numbers):.4f}")
        lines.append(label + "," + ",".join(values))
    return "\n".join(lines) + "\n"


def _mean(values):
    return sum(values) / len(values)


def _median(values):
    ordered = sorted(values)
    middle = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[middle]
    return (ordered[middle - 1] + ordered[middle]) / 2


def upload(client, slot, file_name, text):
    data = {"buttonKey": slot, "file": (io.BytesIO(text.encode("utf-8")), file_name)}
    response = client.post("/api/uploads", data=data, content_type="multipart/form-data")
    if response.status_code != 201:
        raise SystemExit(f"Upload of {file_name} failed: {response.get_json()}")


def main():
    app = create_app()
    client = app.test_client()

    client.post("/api/auth/register", json={"username": DEMO_USERNAME, "password": DEMO_PASSWORD, "name": "Demo Analyst"})
    response = client.post("/api/auth/login", json={"username": DEMO_USERNAME, "password": DEMO_PASSWORD})
    if response.status_code != 200:
        raise SystemExit(f"Could not log in as {DEMO_USERNAME}: {response.get_json()}")

    columns = ["wallet", "pnl", "vol", "win_rate", "is_bot"]
    rows = sample_rows()
    upload(client, "dataset", "wallets.csv", write_csv(rows, columns))
    upload(client, "dictionary", "dictionary.csv", DICTIONARY_CSV)
    upload(client, "summary", "summary.csv", summary_csv(rows, ["pnl", "vol", "win_rate"]))

    workspace = client.get("/api/workspace").get_json()
    print(f"Sample workspace ready with {workspace['rowCount']} wallets. Login with {DEMO_USERNAME} / {DEMO_PASSWORD}")


if __name__ == "__main__":
    main()
