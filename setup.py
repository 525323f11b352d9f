from setuptools import find_packages, setup

install_requires = [
    "pathspec>=0.12",
    "xxhash>=3.4",
    "python-benedict[parse]>=0.33",
    "packaging>=23.0",
]

# 定义可选依赖组
extras_require = {
    "client": [
        "httpx>=0.27",
        "tenacity>=8.2",
    ],
}

# 测试需要覆盖客户端
extras_require["test"] = ["pytest>=8.0", *extras_require["client"]]

# 可选：提供一个 'all' 组，包含所有依赖
extras_require["all"] = extras_require["test"]

setup(
    name="delta-pack",
    version="1.0.0",
    author="ZGHMVP",
    description="增量更新包制作与应用工具",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(include=["delta_pack", "delta_pack.*"]),
    python_requires=">=3.10",
    install_requires=install_requires,
    extras_require=extras_require,
    entry_points={
        "console_scripts": [
            "delta-pack=delta_pack.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
