import io
import os

import pytest
from bson import ObjectId


@pytest.fixture
def upload_folder(app, tmp_path):
    app.config["PRODUCT_UPLOAD_FOLDER"] = str(tmp_path)
    return tmp_path


def upload(client, headers, filename="photo.png", content=b"\x89PNG fake image"):
    return client.post(
        "/api/upload",
        data={"image": (io.BytesIO(content), filename)},
        headers=headers,
        content_type="multipart/form-data",
    )


def test_admin_uploads_image_and_it_is_served(client, admin_headers, upload_folder):
    response = upload(client, admin_headers)

    assert response.status_code == 201
    image_path = response.get_json()["image"]
    assert image_path.startswith("/uploads/")
    assert image_path.endswith(".png")
    assert os.listdir(upload_folder) == [image_path.rsplit("/", 1)[1]]

    served = client.get(image_path)
    assert served.status_code == 200
    assert served.data == b"\x89PNG fake image"


def test_upload_requires_admin(client, user_headers, upload_folder):
    response = upload(client, user_headers)

    assert response.status_code == 403
    assert os.listdir(upload_folder) == []


def test_upload_requires_token(client, upload_folder):
    response = upload(client, {})

    assert response.status_code == 401


def test_upload_rejects_unsupported_extension(client, admin_headers, upload_folder):
    response = upload(client, admin_headers, filename="script.exe")

    assert response.status_code == 400
    assert "Unsupported image format" in response.get_json()["message"]
    assert os.listdir(upload_folder) == []


def test_upload_without_file_is_rejected(client, admin_headers, upload_folder):
    response = client.post(
        "/api/upload", data={}, headers=admin_headers, content_type="multipart/form-data"
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "An image file is required."


def test_missing_upload_is_not_found(client, upload_folder):
    response = client.get("/uploads/missing.png")

    assert response.status_code == 404


def test_deleting_product_removes_uploaded_image(
    client, database, make_product, admin_headers, upload_folder
):
    image_path = upload(client, admin_headers).get_json()["image"]
    product = make_product(name="Camera", image=image_path)

    response = client.delete(f"/api/products/{product['id']}", headers=admin_headers)

    assert response.status_code == 200
    assert os.listdir(upload_folder) == []
    assert database.products.find_one({"_id": ObjectId(product["id"])}) is None
