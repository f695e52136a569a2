from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv('.env')

from utils.gcs_utils import init_bucket
from utils.render_config import RenderConfig


def buckets_to_initialize(config: RenderConfig) -> list[str]:
    # Render output first, then every bucket the fetch chains read from
    names = [config.render_bucket]
    for name in config.scene_buckets + config.intro_buckets + config.music_buckets:
        if name not in names:
            names.append(name)
    return names


def init_buckets(config: RenderConfig | None = None) -> dict[str, bool]:
    config = config or RenderConfig.from_env()
    results = {}
    for bucket_name in buckets_to_initialize(config):
        ok = init_bucket(bucket_name)
        results[bucket_name] = ok
        if ok:
            print(f"✅ Bucket {bucket_name} ready")
        else:
            print(f"❌ Error handling bucket {bucket_name}")
    return results


if __name__ == "__main__":
    init_buckets()
