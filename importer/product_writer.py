"""
Writes mapped products to Shopware: media upload, then product creation.
"""

from typing import List

from logging_config import get_logger
from shopware_client import generate_id
from importer.http_client import APIRequestError
from importer.product_mapper import MappedProduct, image_file_name


class ProductWriter:
    """Creates products and their media in Shopware."""

    def __init__(self, context):
        self.client = context.shopware
        self.resolver = context.resolver
        self.logger = get_logger('writer')

    def upload_images(self, image_urls: List[str]) -> List[str]:
        """
        Upload images by URL, reusing media that already exists under the same file name.

        Images that fail to upload are logged and left out.

        Returns:
            Media IDs in the order of the URLs
        """
        if not image_urls:
            return []

        media_folder_id = self.resolver.media_folder_id()
        media_ids = []

        for image_url in image_urls:
            file_name = image_file_name(image_url)
            try:
                existing_id = self.resolver.media_id_by_filename(file_name)
                if existing_id:
                    self.logger.debug(f"Media with filename {file_name} already exists with ID: {existing_id}")
                    media_ids.append(existing_id)
                    continue

                media_id = self.client.create('media', {
                    'id': generate_id(),
                    'mediaFolderId': media_folder_id,
                })
                self.client.upload_media_from_url(media_id, image_url, file_name)

                self.resolver.remember_media(file_name, media_id)
                media_ids.append(media_id)
                self.logger.info(f"Uploaded image: {image_url} with media ID: {media_id}")

            except APIRequestError as e:
                self.logger.error(f"Error uploading image {image_url}: {e.message}")

        return media_ids

    def create_product(self, mapped: MappedProduct) -> str:
        """
        Upload the product's images and create the product.

        Returns:
            The new product ID

        Raises:
            APIRequestError: The product create call failed
        """
        payload = dict(mapped.payload)

        media_ids = self.upload_images(mapped.image_urls)
        if media_ids:
            payload['cover'] = {'mediaId': media_ids[0]}
            payload['media'] = [
                {'mediaId': media_id, 'position': position}
                for position, media_id in enumerate(media_ids)
            ]

        payload['id'] = generate_id()
        product_id = self.client.create('product', payload)

        self.logger.info(f"Product {mapped.product_number} created successfully with ID {product_id}")
        return product_id
