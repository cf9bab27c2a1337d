import requests

base_url = "http://localhost:5000"
account = {
    "username": "debugshopper",
    "firstName": "Debug",
    "lastName": "Shopper",
    "email": "debug.shopper@example.com",
    "password": "Passw0rd",
}
line_item = {
    "name": "Test Product",
    "category": "Test",
    "price": 10.00,
    "productImage": {"url": "https://example.com/test-product.png"},
}


def show(label, response):
    print(f"{label}: {response.status_code}")
    print(response.text)


try:
    response = requests.post(f"{base_url}/register", json=account)
    if response.status_code == 400:
        response = requests.post(
            f"{base_url}/login",
            json={"email": account["email"], "password": account["password"]},
        )
    show("Auth", response)
    headers = {"Authorization": f"Bearer {response.json()['token']}"}

    show("Add", requests.post(f"{base_url}/products", json=line_item, headers=headers))
    show("List", requests.get(f"{base_url}/cart", headers=headers))
    show(
        "Update",
        requests.patch(
            f"{base_url}/products",
            json={"productImage": line_item["productImage"], "count": 3},
            headers=headers,
        ),
    )
    show(
        "Remove",
        requests.delete(
            f"{base_url}/cart",
            json={"productImage": line_item["productImage"]},
            headers=headers,
        ),
    )
except Exception as e:
    print(f"Error: {e}")
