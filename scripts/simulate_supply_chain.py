"""
Walk one batch through the supply chain against a running API.
Run:
    uvicorn app:app
    python scripts/simulate_supply_chain.py
"""
import os
import random
import requests

API = os.getenv("API_URL", "http://localhost:8000")

HERBS = ["Ashwagandha", "Turmeric", "Tulsi", "Brahmi", "Neem"]

def main():
    r = requests.get(f"{API}/api/seed")
    print("Seed:", r.json())

    rr = requests.post(f"{API}/api/harvests", json={
        "farmer_id": "farmer-2",
        "herb_type": random.choice(HERBS),
        "quantity": round(random.uniform(5, 50), 1),
        "unit": "kg",
        "location": {"lat": 23.2599, "lng": 77.4126, "address": "Farm Location, Bhopal"},
        "notes": "Harvested at dawn",
    })
    print("register:", rr.status_code, rr.text)
    batch_id = rr.json()["batch"]["id"]

    # transfer before verification is refused
    rr = requests.post(f"{API}/api/batches/{batch_id}/transfer", json={
        "actor": "farmer-2", "role": "farmer", "new_owner": "retailer-3",
    })
    print("early transfer:", rr.status_code, rr.json()["error"])

    rr = requests.post(f"{API}/api/batches/{batch_id}/status", json={
        "actor": "distributor-4", "status": "verified", "notes": "Moisture within limits",
    })
    print("verify:", rr.status_code, rr.json()["batch"]["status"])

    rr = requests.post(f"{API}/api/batches/{batch_id}/transfer", json={
        "actor": "distributor-4",
        "new_owner": "retailer-3",
        "new_owner_role": "retailer",
        "notes": "Dispatched in cold truck",
    })
    print("transfer:", rr.status_code, rr.json()["batch"]["current_owner"])

    rr = requests.get(f"{API}/api/batches/{batch_id}/verify")
    print("verify chain:", rr.json())

    rr = requests.get(f"{API}/api/batches/{batch_id}/trace")
    for entry in rr.json()["entries"]:
        print(f"  #{entry['sequence']} {entry['description']}")

if __name__ == "__main__":
    main()
