"""Image conversion module.

Accepts a single uploaded image, converts it with Pillow and returns the
result as base64 inside a JSON body:

- WebP conversion
- Optimized (progressive, Huffman-optimized) JPEG recompression
- Both in sequence: optimize as JPEG, then convert to WebP

Uploads and every derived file live in the scratch directory (uploads/ by
default) only for the duration of the request that created them. Files are
limited to 50MB.
"""
