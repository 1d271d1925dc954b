"""
Detection pipeline services.

- preprocess: decoded pixels -> normalized model input tensor
- anchors: prior boxes matching the detector's feature maps
- postprocess: anchor decoding, confidence filtering, NMS
- detector: the synchronous per-image pipeline
- scheduler: bounded worker pool with per-request deadlines
- jobs: queued detection with results stored on disk
"""
