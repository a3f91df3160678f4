import argparse
import asyncio
import time

import httpx

BASE_URL = "http://localhost:8000/api/products"


async def concurrent_requests(client: httpx.AsyncClient, url: str, num_requests: int, params=None):
    """Lance num_requests requêtes simultanées"""
    tasks = [client.get(url, params=params) for _ in range(num_requests)]
    start = time.time()
    responses = await asyncio.gather(*tasks)
    duration = time.time() - start

    hits = sum(1 for r in responses if r.status_code == 200 and r.json()["cache_hit"])
    errors = sum(1 for r in responses if r.status_code != 200)
    print(f"✅ {num_requests} requêtes en {duration:.2f}s")
    print(f"📊 Temps moyen: {duration / num_requests * 1000:.0f}ms par requête")
    print(f"🎯 Cache hits: {hits}/{num_requests} - erreurs: {errors}")

    return responses


async def test_stampede(base_url: str, num_requests: int, term: str):
    async with httpx.AsyncClient(base_url=base_url, timeout=30) as client:
        # 1. Données de test
        print("1️⃣ Initialisation des données de test...")
        await client.post("/init")
        await client.post("/init-bulk")

        # 2. Remplir les caches
        print("2️⃣ Remplissage initial des caches...")
        await client.get("/stock")
        await client.get("/search/cached", params={"term": term})

        # 3. Attendre que le cache local expire (TTL 5s)
        print("3️⃣ Attente expiration cache local (6s)...")
        await asyncio.sleep(6)

        # 4. Rafale sur le stock: chaque miss concurrent interroge la base
        print(f"4️⃣ {num_requests} requêtes simultanées sur /stock...")
        await concurrent_requests(client, "/stock", num_requests)

        # 5. Comparaison des stratégies de recherche
        for path in ("/search/full-scan", "/search/prefix", "/search/cached"):
            print(f"5️⃣ {num_requests} requêtes simultanées sur {path}...")
            await concurrent_requests(client, path, num_requests, params={"term": term})


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Stampede / load test de l'inventory API")
    parser.add_argument("--url", default=BASE_URL)
    parser.add_argument("-n", "--requests", type=int, default=100)
    parser.add_argument("--term", default="Test Product 00")
    args = parser.parse_args()
    asyncio.run(test_stampede(args.url, args.requests, args.term))
